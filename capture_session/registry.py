"""
Active session registry and concurrent-session admission.

The registry is a process-wide service created at startup and injected into
the guard. It only counts sessions; it never authorizes anything.
"""
import logging
from typing import Any, Optional
from datetime import datetime

from pydantic import BaseModel, Field

from .audit import session_ref
from .credentials import CredentialRegistry
from .exceptions import AdmissionDenied
from .locks import KeyedLock
from .vault.models import utcnow

logger = logging.getLogger("capture_session.guard")


class ActiveSessionEntry(BaseModel):
    identity: str
    session_id: str
    started_at: datetime = Field(default_factory=utcnow)
    origin: dict[str, Any] = Field(default_factory=dict)


class ActiveSessionRegistry:
    """Live sessions keyed by session identifier."""

    def __init__(self) -> None:
        self._entries: dict[str, ActiveSessionEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def get(self, session_id: str) -> Optional[ActiveSessionEntry]:
        return self._entries.get(session_id)

    def count(self, identity: str, exclude: Optional[str] = None) -> int:
        return sum(
            1 for sid, entry in self._entries.items()
            if entry.identity == identity and sid != exclude
        )

    def entries_for(self, identity: str) -> list[ActiveSessionEntry]:
        return [e for e in self._entries.values() if e.identity == identity]

    def register(self, entry: ActiveSessionEntry) -> None:
        self._entries[entry.session_id] = entry

    def remove(self, session_id: str) -> Optional[ActiveSessionEntry]:
        return self._entries.pop(session_id, None)

    def rekey(self, old_id: str, new_id: str) -> None:
        """Move an entry to a rotated identifier in one step."""
        entry = self._entries.pop(old_id, None)
        if entry is not None:
            self._entries[new_id] = entry.model_copy(
                update={"session_id": new_id}
            )

    def clear(self) -> None:
        self._entries.clear()


class AdmissionController:
    """Bounds the number of live sessions one identity may hold.

    The count and the registration happen under the identity's lock, so two
    simultaneous logins can never both take the last free slot.
    """

    def __init__(
        self,
        credentials: CredentialRegistry,
        registry: Optional[ActiveSessionRegistry] = None,
    ):
        self._credentials = credentials
        self._registry = registry if registry is not None else ActiveSessionRegistry()
        self._locks = KeyedLock()

    @property
    def registry(self) -> ActiveSessionRegistry:
        return self._registry

    async def admit(
        self,
        identity: str,
        candidate_session_id: str,
        origin: Optional[dict[str, Any]] = None,
        started_at: Optional[datetime] = None,
    ) -> ActiveSessionEntry:
        """Register ``candidate_session_id`` if ``identity`` has room.

        Returns:
            The registered entry.

        Raises:
            AdmissionDenied: The identity is unknown or at its limit.
        """
        credential = self._credentials.lookup(identity)
        if credential is None:
            raise AdmissionDenied(details={"identity": identity, "reason": "unknown"})
        async with self._locks.acquire(identity):
            active = self._registry.count(identity, exclude=candidate_session_id)
            if active >= credential.allowed_sessions:
                logger.warning(
                    "Admission denied for %s: %d/%d session(s) active",
                    identity, active, credential.allowed_sessions,
                )
                raise AdmissionDenied(
                    details={
                        "identity": identity,
                        "active": active,
                        "allowed": credential.allowed_sessions,
                    }
                )
            entry = ActiveSessionEntry(
                identity=identity,
                session_id=candidate_session_id,
                started_at=started_at or utcnow(),
                origin=origin or {},
            )
            self._registry.register(entry)
        logger.debug(
            "Admitted %s for %s (%d/%d)",
            session_ref(candidate_session_id), identity,
            active + 1, credential.allowed_sessions,
        )
        return entry

    def release(self, session_id: str) -> None:
        self._registry.remove(session_id)
