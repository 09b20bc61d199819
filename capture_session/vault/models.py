"""Rows held by the capture store backends."""
from enum import Enum
from typing import Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStatus(str, Enum):
    NEW = "new"
    SENT = "sent"


class CaptureSession(BaseModel):
    """Capture window bound to one login session.

    ``expires_at`` is absolute: activity never extends it.
    """

    capture_id: str
    identity: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


class CapturedRecord(BaseModel):
    """Encrypted phone/code pair. Content is never rewritten."""

    id: Optional[int] = None
    capture_id: str
    encrypted_phone: bytes = Field(repr=False)
    encrypted_code: bytes = Field(repr=False)
    status: RecordStatus = RecordStatus.NEW
    created_at: datetime = Field(default_factory=utcnow)


class CapturedEntry(BaseModel):
    """Decrypted view of a CapturedRecord returned to an authorized reader."""

    id: int
    phone: str = Field(repr=False)
    code: str = Field(repr=False)
    status: RecordStatus
    created_at: datetime


class DeliveryLogEntry(BaseModel):
    """Append-only record of one send attempt."""

    id: Optional[int] = None
    capture_id: str
    identity: str
    encrypted_recipient: bytes = Field(repr=False)
    message_preview: str
    status: str
    sent_at: datetime = Field(default_factory=utcnow)
