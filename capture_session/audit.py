"""
Audit events emitted by the session guard and the capture store.

The sink is a collaborator: anything with an ``emit(record)`` method works.
``LoggingAuditSink`` is the default and writes one JSON line per event to the
``capture_session.audit`` logger.

Security Note:
    Never put plaintext phone numbers, safety codes, ciphertext, or full
    session identifiers into an audit record. Use ``session_ref()`` and
    ``phone_digest()``.
"""
import hashlib
import logging
from enum import Enum
from typing import Any, Optional, Protocol
from datetime import datetime, timezone

import orjson
from pydantic import BaseModel, Field

logger = logging.getLogger("capture_session.audit")


class AuditEvent(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_ROTATED = "SESSION_ROTATED"
    SESSION_ROTATION_FAILED = "SESSION_ROTATION_FAILED"
    ADMISSION_DENIED = "ADMISSION_DENIED"
    DATA_CAPTURED = "DATA_CAPTURED"
    SESSION_ENDED = "SESSION_ENDED"
    INTEGRITY_FAILURE = "INTEGRITY_FAILURE"
    MESSAGE_SENT = "MESSAGE_SENT"
    MESSAGE_FAILED = "MESSAGE_FAILED"
    MESSAGES_SENT = "MESSAGES_SENT"
    SWEEP_COMPLETED = "SWEEP_COMPLETED"


class AuditRecord(BaseModel):
    """A structured audit event."""

    action: AuditEvent
    user: str = "anonymous"
    session: str = "none"
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = Field(default_factory=dict)


class AuditSink(Protocol):
    def emit(self, record: AuditRecord) -> None:
        ...


class LoggingAuditSink:
    """Writes audit records as JSON lines to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._logger = log or logger

    def emit(self, record: AuditRecord) -> None:
        line = orjson.dumps(record.model_dump(mode="json"))
        self._logger.info("AUDIT %s", line.decode("utf-8"))


def session_ref(session_id: Optional[str]) -> str:
    """Short, non-replayable reference to a session id for logs."""
    if not session_id:
        return "none"
    return f"{session_id[:8]}..."


def phone_digest(phone: str) -> str:
    return hashlib.sha256(phone.encode("utf-8")).hexdigest()[:16]


def emit(
    sink: AuditSink,
    action: AuditEvent,
    user: Optional[str] = None,
    session_id: Optional[str] = None,
    **details: Any
) -> None:
    """Build and emit an audit record; a failing sink never breaks a request."""
    record = AuditRecord(
        action=action,
        user=user or "anonymous",
        session=session_ref(session_id),
        details=details,
    )
    try:
        sink.emit(record)
    except Exception as err:
        logger.error("Audit sink failed for %s: %s", action.value, err)
