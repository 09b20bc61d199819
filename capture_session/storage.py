"""
Session storage used by the guard.

Sessions are persisted as jsonpickle-encoded records keyed by session id.
``rotate`` writes the new identifier and drops the old one without yielding
to the event loop in between, so at no point are both identifiers valid.
"""
import logging
from typing import Optional

from .audit import session_ref
from .data import SessionData

logger = logging.getLogger("capture_session.guard")


class SessionStorage:
    """In-process session storage."""

    def __init__(self) -> None:
        self._sessions: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def load(self, session_id: str) -> Optional[SessionData]:
        payload = self._sessions.get(session_id)
        if payload is None:
            return None
        return SessionData.decode(payload)

    async def save(self, session: SessionData) -> None:
        self._sessions[session.session_id] = session.encode()
        session.is_changed = False

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def rotate(self, old_id: str, session: SessionData) -> None:
        """Store ``session`` under its (new) id and drop ``old_id``.

        Raises:
            KeyError: The old identifier is no longer stored.
            ValueError: The new identifier is already in use.
        """
        new_id = session.session_id
        if old_id not in self._sessions:
            raise KeyError(session_ref(old_id))
        if new_id in self._sessions:
            raise ValueError("session identifier collision")
        payload = session.encode()
        self._sessions[new_id] = payload
        del self._sessions[old_id]
        session.is_changed = False
        logger.debug("Rotated %s -> %s", session_ref(old_id), session_ref(new_id))

    async def session_ids(self) -> list[str]:
        return list(self._sessions.keys())
