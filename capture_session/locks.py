"""Per-key asyncio locks.

Operations on the same key (a session id, a capture id, an identity) are
serialized; operations on different keys never wait on each other.
"""
import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator


class KeyedLock:
    """A lazily-populated map of asyncio locks, one per key.

    Lock objects are dropped once nobody holds or waits on them, so the map
    only grows with the number of keys in use at the same time.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]
