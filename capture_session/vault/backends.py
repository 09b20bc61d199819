"""
Capture Store Backends — where encrypted captures are kept.

Backends only ever see ciphertext. They are injected into ``CaptureStore``;
the store maps any exception raised here to ``StorageUnavailable``.

``purge`` must delete a session's records and the session row as one unit:
either both are gone when it returns, or it raises and neither is.
"""
import logging
import itertools
from abc import ABC, abstractmethod
from typing import Any, Optional
from datetime import datetime

from .models import (
    CaptureSession,
    CapturedRecord,
    DeliveryLogEntry,
    RecordStatus,
)

logger = logging.getLogger("capture_session.vault")


class CaptureBackend(ABC):
    """Storage contract used by ``CaptureStore``."""

    @abstractmethod
    async def insert_session(self, session: CaptureSession) -> None:
        ...

    @abstractmethod
    async def get_session(self, capture_id: str) -> Optional[CaptureSession]:
        ...

    @abstractmethod
    async def insert_record(self, record: CapturedRecord) -> CapturedRecord:
        """Persist a record and return it with its assigned id."""

    @abstractmethod
    async def list_records(
        self,
        capture_id: str,
        status: Optional[RecordStatus] = None
    ) -> list[CapturedRecord]:
        ...

    @abstractmethod
    async def set_status(
        self,
        record_ids: list[int],
        status: RecordStatus
    ) -> int:
        """Change status of the given records, return how many changed."""

    @abstractmethod
    async def purge(self, capture_id: str) -> int:
        """Delete all records then the session; return records deleted."""

    @abstractmethod
    async def expired(self, now: datetime) -> list[str]:
        """Capture ids whose ``expires_at < now``."""

    @abstractmethod
    async def append_delivery(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        ...

    async def close(self) -> None:
        return None


class MemoryCaptureBackend(CaptureBackend):
    """In-process backend.

    No method awaits between reading and writing its maps, so every call is
    atomic with respect to other tasks on the same event loop.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, CaptureSession] = {}
        self._records: dict[int, CapturedRecord] = {}
        self._deliveries: list[DeliveryLogEntry] = []
        self._ids = itertools.count(1)
        self._delivery_ids = itertools.count(1)

    async def insert_session(self, session: CaptureSession) -> None:
        if session.capture_id in self._sessions:
            raise ValueError("capture session already exists")
        self._sessions[session.capture_id] = session

    async def get_session(self, capture_id: str) -> Optional[CaptureSession]:
        return self._sessions.get(capture_id)

    async def insert_record(self, record: CapturedRecord) -> CapturedRecord:
        if record.capture_id not in self._sessions:
            raise KeyError("capture session does not exist")
        stored = record.model_copy(update={"id": next(self._ids)})
        self._records[stored.id] = stored
        return stored

    async def list_records(
        self,
        capture_id: str,
        status: Optional[RecordStatus] = None
    ) -> list[CapturedRecord]:
        return [
            r for r in self._records.values()
            if r.capture_id == capture_id
            and (status is None or r.status == status)
        ]

    async def set_status(
        self,
        record_ids: list[int],
        status: RecordStatus
    ) -> int:
        changed = 0
        for rid in record_ids:
            record = self._records.get(rid)
            if record is not None and record.status != status:
                self._records[rid] = record.model_copy(update={"status": status})
                changed += 1
        return changed

    async def purge(self, capture_id: str) -> int:
        doomed = [
            rid for rid, r in self._records.items()
            if r.capture_id == capture_id
        ]
        for rid in doomed:
            del self._records[rid]
        self._sessions.pop(capture_id, None)
        return len(doomed)

    async def expired(self, now: datetime) -> list[str]:
        return [
            cid for cid, s in self._sessions.items() if s.expires_at < now
        ]

    async def append_delivery(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        stored = entry.model_copy(update={"id": next(self._delivery_ids)})
        self._deliveries.append(stored)
        return stored

    def deliveries(self) -> list[DeliveryLogEntry]:
        return list(self._deliveries)


# ---------------------------------------------------------------------------
# PostgreSQL (asyncpg-compatible pool)
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE SCHEMA IF NOT EXISTS capture;

CREATE TABLE IF NOT EXISTS capture.capture_sessions (
    capture_id TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS capture.captured_data (
    id BIGSERIAL PRIMARY KEY,
    capture_id TEXT NOT NULL
        REFERENCES capture.capture_sessions (capture_id),
    encrypted_phone BYTEA NOT NULL,
    encrypted_code BYTEA NOT NULL,
    status TEXT NOT NULL DEFAULT 'new',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS captured_data_capture_id_idx
    ON capture.captured_data (capture_id);

CREATE TABLE IF NOT EXISTS capture.delivery_log (
    id BIGSERIAL PRIMARY KEY,
    capture_id TEXT NOT NULL,
    identity TEXT NOT NULL,
    encrypted_recipient BYTEA NOT NULL,
    message_preview TEXT,
    status TEXT NOT NULL,
    sent_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_INSERT_SESSION = """
INSERT INTO capture.capture_sessions (capture_id, identity, created_at, expires_at)
VALUES ($1, $2, $3, $4)
"""

_SELECT_SESSION = """
SELECT capture_id, identity, created_at, expires_at
FROM capture.capture_sessions
WHERE capture_id = $1
"""

_INSERT_RECORD = """
INSERT INTO capture.captured_data
    (capture_id, encrypted_phone, encrypted_code, status, created_at)
VALUES ($1, $2, $3, $4, $5)
RETURNING id
"""

_SELECT_RECORDS = """
SELECT id, capture_id, encrypted_phone, encrypted_code, status, created_at
FROM capture.captured_data
WHERE capture_id = $1
ORDER BY id
"""

_SELECT_RECORDS_BY_STATUS = """
SELECT id, capture_id, encrypted_phone, encrypted_code, status, created_at
FROM capture.captured_data
WHERE capture_id = $1 AND status = $2
ORDER BY id
"""

_UPDATE_STATUS = """
UPDATE capture.captured_data
SET status = $1
WHERE id = ANY($2::bigint[]) AND status <> $1
"""

_DELETE_RECORDS = """
DELETE FROM capture.captured_data WHERE capture_id = $1
"""

_DELETE_SESSION = """
DELETE FROM capture.capture_sessions WHERE capture_id = $1
"""

_SELECT_EXPIRED = """
SELECT capture_id FROM capture.capture_sessions WHERE expires_at < $1
"""

_INSERT_DELIVERY = """
INSERT INTO capture.delivery_log
    (capture_id, identity, encrypted_recipient, message_preview, status, sent_at)
VALUES ($1, $2, $3, $4, $5, $6)
RETURNING id
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostgresCaptureBackend(CaptureBackend):
    """Backend over an asyncpg-compatible connection pool.

    Args:
        db_pool: Pool exposing ``acquire()`` as an async context manager.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def create_schema(self) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(SCHEMA)

    async def insert_session(self, session: CaptureSession) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_SESSION,
                session.capture_id, session.identity,
                session.created_at, session.expires_at,
            )

    async def get_session(self, capture_id: str) -> Optional[CaptureSession]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_SESSION, capture_id)
        if row is None:
            return None
        return CaptureSession(**dict(row))

    async def insert_record(self, record: CapturedRecord) -> CapturedRecord:
        async with self._db.acquire() as conn:
            record_id = await conn.fetchval(
                _INSERT_RECORD,
                record.capture_id, record.encrypted_phone,
                record.encrypted_code, record.status.value, record.created_at,
            )
        return record.model_copy(update={"id": record_id})

    async def list_records(
        self,
        capture_id: str,
        status: Optional[RecordStatus] = None
    ) -> list[CapturedRecord]:
        async with self._db.acquire() as conn:
            if status is None:
                rows = await conn.fetch(_SELECT_RECORDS, capture_id)
            else:
                rows = await conn.fetch(
                    _SELECT_RECORDS_BY_STATUS, capture_id, status.value
                )
        return [CapturedRecord(**dict(row)) for row in rows]

    async def set_status(
        self,
        record_ids: list[int],
        status: RecordStatus
    ) -> int:
        if not record_ids:
            return 0
        async with self._db.acquire() as conn:
            result = await conn.execute(
                _UPDATE_STATUS, status.value, list(record_ids)
            )
        return _affected(result)

    async def purge(self, capture_id: str) -> int:
        async with self._db.acquire() as conn:
            tx = conn.transaction()
            await tx.start()
            try:
                result = await conn.execute(_DELETE_RECORDS, capture_id)
                await conn.execute(_DELETE_SESSION, capture_id)
                await tx.commit()
            except Exception:
                await tx.rollback()
                raise
        return _affected(result)

    async def expired(self, now: datetime) -> list[str]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_EXPIRED, now)
        return [row["capture_id"] for row in rows]

    async def append_delivery(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        async with self._db.acquire() as conn:
            entry_id = await conn.fetchval(
                _INSERT_DELIVERY,
                entry.capture_id, entry.identity, entry.encrypted_recipient,
                entry.message_preview, entry.status, entry.sent_at,
            )
        return entry.model_copy(update={"id": entry_id})

    async def close(self) -> None:
        close = getattr(self._db, "close", None)
        if close is not None:
            await close()
