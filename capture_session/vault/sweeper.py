"""
Background sweep of expired capture windows and idle sessions.

Runs as an asyncio task next to request handling. Every ``interval`` seconds
it purges expired capture windows from the store and, when a guard is given,
destroys sessions that idled out without another request. Stop it with
``stop()`` (or use it as an async context manager) on shutdown.
"""
import asyncio
import logging
from typing import Any, Optional

from .config import SWEEP_INTERVAL
from .store import CaptureStore

logger = logging.getLogger("capture_session.vault")


class CaptureSweeper:
    """Periodic, cancellable sweep task.

    Args:
        store: Capture store to sweep.
        guard: Optional ``SessionGuard``; its ``expire_idle()`` runs each pass.
        interval: Seconds between passes.
    """

    def __init__(
        self,
        store: CaptureStore,
        guard: Optional[Any] = None,
        interval: int = SWEEP_INTERVAL,
    ):
        self._store = store
        self._guard = guard
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict:
        """Run a single sweep pass.

        Returns:
            Stats dict with keys: sessions, records, idle_sessions.
        """
        stats = dict(await self._store.sweep())
        stats["idle_sessions"] = 0
        if self._guard is not None:
            stats["idle_sessions"] = await self._guard.expire_idle()
        return stats

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as err:
                # a failed pass is retried on the next tick
                logger.error("Capture sweep failed: %s", err)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="capture-sweeper")
        logger.info("Capture sweeper started (interval=%ds)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Capture sweeper stopped")

    async def __aenter__(self) -> "CaptureSweeper":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
