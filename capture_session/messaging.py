"""
Message dispatch to captured recipients.

Sends one message to every unsent capture of a session, each personalized
with its safety code. Delivery itself is delegated to an injected
``MessageSender``; this module only decides who receives what, records the
outcome, and reports masked results.
"""
import re
import logging
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from .audit import AuditEvent, AuditSink, LoggingAuditSink, emit, phone_digest
from .data import SessionData
from .exceptions import (
    CaptureSessionError,
    IntegrityFailure,
    StorageUnavailable,
    ValidationFailed,
)
from .guard import SessionGuard
from .vault.models import CapturedEntry, RecordStatus

logger = logging.getLogger("capture_session.messaging")

MAX_MESSAGE_LENGTH = 1600

_MASK = re.compile(r"(\d{3})\d{4}(\d{3})")


class MessageSender(Protocol):
    async def send(self, to: str, message: str) -> str:
        """Queue a message and return the provider's delivery id."""
        ...


class DeliveryResult(BaseModel):
    phone: str
    status: str
    delivery_id: Optional[str] = None
    error: Optional[str] = None


class DispatchReport(BaseModel):
    results: list[DeliveryResult] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def sent(self) -> int:
        return sum(1 for r in self.results if r.status == RecordStatus.SENT.value)

    @property
    def failed(self) -> int:
        return self.total - self.sent

    def summary(self) -> dict[str, int]:
        return {"total": self.total, "sent": self.sent, "failed": self.failed}


def sanitize_message(message: str) -> str:
    """Strip angle brackets and cap at the SMS concatenation limit."""
    return re.sub(r"[<>]", "", message)[:MAX_MESSAGE_LENGTH]


def mask_phone(phone: str) -> str:
    return _MASK.sub(r"\1****\2", phone)


def personalize(message: str, code: str) -> str:
    return f"{message}\n\nSafety Code: {code}"


class MessageDispatcher:
    """Sends a message to the captured recipients of a session.

    Args:
        guard: Session guard; reads and status changes go through it so an
            integrity failure destroys the session.
        sender: Delivery provider.
        audit: Audit sink; defaults to ``LoggingAuditSink``.
    """

    def __init__(
        self,
        guard: SessionGuard,
        sender: MessageSender,
        audit: Optional[AuditSink] = None,
    ):
        self._guard = guard
        self._sender = sender
        self._audit = audit or LoggingAuditSink()

    async def _record(
        self,
        session: SessionData,
        phone: str,
        text: str,
        status: str
    ) -> None:
        """Append the delivery log entry for one attempt."""
        try:
            await self._guard.store.log_delivery(
                session.capture_id, session.identity, phone, text, status,
            )
        except StorageUnavailable as err:
            logger.error(
                "Delivery log write for %s failed: %s", phone_digest(phone), err
            )

    async def _deliver(
        self,
        session: SessionData,
        text: str,
        recipient: CapturedEntry
    ) -> DeliveryResult:
        digest = phone_digest(recipient.phone)
        try:
            delivery_id = await self._sender.send(
                recipient.phone, personalize(text, recipient.code)
            )
        except Exception as err:
            logger.warning("Delivery to %s failed: %s", digest, err)
            await self._record(session, recipient.phone, text, "failed")
            emit(
                self._audit,
                AuditEvent.MESSAGE_FAILED,
                user=session.identity,
                session_id=session.session_id,
                phone_hash=digest,
                error=type(err).__name__,
            )
            return DeliveryResult(
                phone=mask_phone(recipient.phone),
                status="failed",
                error="Delivery failed",
            )
        marked = True
        try:
            await self._guard.mark_sent(session, recipient.phone)
        except IntegrityFailure:
            await self._record(
                session, recipient.phone, text, RecordStatus.SENT.value
            )
            raise
        except CaptureSessionError as err:
            # delivered; the capture stays new
            marked = False
            logger.error(
                "Delivered to %s but status update failed: %s", digest, err
            )
        await self._record(session, recipient.phone, text, RecordStatus.SENT.value)
        emit(
            self._audit,
            AuditEvent.MESSAGE_SENT,
            user=session.identity,
            session_id=session.session_id,
            phone_hash=digest,
            delivery_id=delivery_id,
            status_updated=marked,
        )
        return DeliveryResult(
            phone=mask_phone(recipient.phone),
            status=RecordStatus.SENT.value,
            delivery_id=delivery_id,
        )

    async def send(self, session: SessionData, message: str) -> DispatchReport:
        """Deliver ``message`` to each unsent capture of ``session``.

        Every attempt gets a delivery log entry. A failed delivery, status
        update or log write does not stop the remaining recipients.

        Raises:
            ValidationFailed: Empty message, or no recipients to send to.
            IntegrityFailure: A capture failed to decrypt (session destroyed).
        """
        text = sanitize_message(message.strip())
        if not text:
            raise ValidationFailed(details={"field": "message"})
        recipients = await self._guard.read_active(session)
        if not recipients:
            raise ValidationFailed(
                "No eligible recipients in current session",
                details={"reason": "no_recipients"},
            )
        report = DispatchReport()
        for recipient in recipients:
            report.results.append(await self._deliver(session, text, recipient))
        emit(
            self._audit,
            AuditEvent.MESSAGES_SENT,
            user=session.identity,
            session_id=session.session_id,
            count=report.total,
            success_count=report.sent,
        )
        return report
