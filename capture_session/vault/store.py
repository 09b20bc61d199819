"""
CaptureStore — Encrypted, short-lived storage of phone/safety-code captures.

Provides the capture store API:
- ``create_capture_session(capture_id, identity)`` — open a capture window
- ``capture(capture_id, phone, code)`` — encrypt and append a record
- ``read_active(capture_id, identity)`` — decrypt the owner's unsent records
- ``mark_sent(capture_id, phone)`` — move matching records from new to sent
- ``end_session(capture_id)`` — purge records and the window
- ``sweep(now)`` — purge every expired window
- ``log_delivery(...)`` — append a delivery log entry

Every operation on a capture id runs under that id's lock, so a sweep or
purge can never interleave with a read or capture on the same id. Different
capture ids never contend.

Security Note:
    Never log plaintext or ciphertext values. Only log capture id prefixes,
    record ids, and counts.
"""
import hmac
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from ..audit import (
    AuditEvent,
    AuditSink,
    LoggingAuditSink,
    emit,
    phone_digest,
    session_ref,
)
from ..exceptions import (
    CaptureSessionError,
    IntegrityFailure,
    SessionNotFound,
    StorageUnavailable,
)
from ..locks import KeyedLock
from .backends import CaptureBackend, MemoryCaptureBackend
from .config import CAPTURE_TTL, VaultConfig
from .crypto import FieldCipher, field_aad
from .models import (
    CaptureSession,
    CapturedEntry,
    CapturedRecord,
    DeliveryLogEntry,
    RecordStatus,
    utcnow,
)

logger = logging.getLogger("capture_session.vault")

PREVIEW_LENGTH = 50


class CaptureStore:
    """Encrypted capture storage bound to login sessions.

    Args:
        cipher: Field cipher holding the process-wide key.
        backend: Storage backend; defaults to an in-memory backend.
        ttl: Lifetime of a capture window in seconds (absolute).
        audit: Audit sink; defaults to ``LoggingAuditSink``.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        cipher: FieldCipher,
        backend: Optional[CaptureBackend] = None,
        ttl: int = CAPTURE_TTL,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._cipher = cipher
        self._backend = backend if backend is not None else MemoryCaptureBackend()
        self._ttl = timedelta(seconds=ttl)
        self._audit = audit or LoggingAuditSink()
        self._clock = clock
        self._locks = KeyedLock()

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        backend: Optional[CaptureBackend] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "CaptureStore":
        cipher = FieldCipher(config.encryption_key, config.cipher_backend)
        return cls(
            cipher,
            backend=backend,
            ttl=config.capture_ttl,
            audit=audit,
            clock=clock,
        )

    @property
    def backend(self) -> CaptureBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _storage(self, operation: str) -> AsyncIterator[None]:
        """Map raw backend errors to StorageUnavailable."""
        try:
            yield
        except CaptureSessionError:
            raise
        except Exception as err:
            logger.error("Capture store %s failed: %s", operation, err)
            raise StorageUnavailable(
                details={"operation": operation}
            ) from err

    async def _live_session(self, capture_id: str, now: datetime) -> CaptureSession:
        async with self._storage("lookup"):
            session = await self._backend.get_session(capture_id)
        if session is None or not session.is_live(now):
            raise SessionNotFound(details={"capture": session_ref(capture_id)})
        return session

    def _open(self, record: CapturedRecord) -> CapturedEntry:
        try:
            phone = self._cipher.decrypt(
                record.encrypted_phone, field_aad(record.capture_id, "phone")
            )
            code = self._cipher.decrypt(
                record.encrypted_code, field_aad(record.capture_id, "code")
            )
        except IntegrityFailure as err:
            err.details["record_id"] = record.id
            raise
        return CapturedEntry(
            id=record.id,
            phone=phone,
            code=code,
            status=record.status,
            created_at=record.created_at,
        )

    async def _quarantine(
        self,
        session: CaptureSession,
        err: IntegrityFailure
    ) -> None:
        """Purge a capture window whose data failed authentication.

        Caller must hold the capture id lock.
        """
        emit(
            self._audit,
            AuditEvent.INTEGRITY_FAILURE,
            user=session.identity,
            session_id=session.capture_id,
            **err.details,
        )
        logger.error(
            "Integrity failure in capture %s (record=%s); purging",
            session_ref(session.capture_id), err.details.get("record_id"),
        )
        try:
            await self._backend.purge(session.capture_id)
        except Exception as purge_err:
            logger.error(
                "Purge after integrity failure failed for %s: %s",
                session_ref(session.capture_id), purge_err,
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_capture_session(
        self,
        capture_id: str,
        identity: str
    ) -> CaptureSession:
        """Open a capture window that expires ``ttl`` seconds from now.

        Raises:
            StorageUnavailable: If the backend rejects the insert.
        """
        now = self._clock()
        session = CaptureSession(
            capture_id=capture_id,
            identity=identity,
            created_at=now,
            expires_at=now + self._ttl,
        )
        async with self._locks.acquire(capture_id):
            async with self._storage("create"):
                await self._backend.insert_session(session)
        logger.debug(
            "Capture session %s opened for %s", session_ref(capture_id), identity
        )
        return session

    async def capture(
        self,
        capture_id: str,
        phone: str,
        code: str
    ) -> CapturedRecord:
        """Encrypt and store a phone/code pair.

        The caller has already checked both values against their
        confirmation entries; nothing is re-verified here.

        Returns:
            The stored (still encrypted) record.

        Raises:
            SessionNotFound: No live capture window for ``capture_id``.
            StorageUnavailable: Backend failure.
        """
        async with self._locks.acquire(capture_id):
            now = self._clock()
            session = await self._live_session(capture_id, now)
            record = CapturedRecord(
                capture_id=capture_id,
                encrypted_phone=self._cipher.encrypt(
                    phone, field_aad(capture_id, "phone")
                ),
                encrypted_code=self._cipher.encrypt(
                    code, field_aad(capture_id, "code")
                ),
                created_at=now,
            )
            async with self._storage("capture"):
                stored = await self._backend.insert_record(record)
        emit(
            self._audit,
            AuditEvent.DATA_CAPTURED,
            user=session.identity,
            session_id=capture_id,
            record_id=stored.id,
            phone_hash=phone_digest(phone),
        )
        return stored

    async def read_active(
        self,
        capture_id: str,
        identity: str
    ) -> list[CapturedEntry]:
        """Return the decrypted, unsent records of a live window.

        Records of a window owned by another identity are never returned.

        Raises:
            SessionNotFound: No live capture window for ``capture_id``.
            IntegrityFailure: Any record failed to decrypt; nothing is
                returned and the window is purged.
            StorageUnavailable: Backend failure.
        """
        async with self._locks.acquire(capture_id):
            session = await self._live_session(capture_id, self._clock())
            if not hmac.compare_digest(
                session.identity.encode("utf-8"), identity.encode("utf-8")
            ):
                logger.warning(
                    "Identity %s attempted to read capture %s",
                    identity, session_ref(capture_id),
                )
                return []
            async with self._storage("read"):
                records = await self._backend.list_records(
                    capture_id, RecordStatus.NEW
                )
            try:
                return [self._open(r) for r in records]
            except IntegrityFailure as err:
                await self._quarantine(session, err)
                raise

    async def mark_sent(self, capture_id: str, phone: str) -> int:
        """Move every new record whose phone decrypts to ``phone`` to sent.

        Each encryption uses a fresh nonce, so matching decrypts and compares
        rather than comparing ciphertext.

        Returns:
            Number of records transitioned.
        """
        async with self._locks.acquire(capture_id):
            session = await self._live_session(capture_id, self._clock())
            async with self._storage("read"):
                records = await self._backend.list_records(
                    capture_id, RecordStatus.NEW
                )
            wanted = phone.encode("utf-8")
            matched = []
            try:
                for record in records:
                    entry = self._open(record)
                    if hmac.compare_digest(entry.phone.encode("utf-8"), wanted):
                        matched.append(record.id)
            except IntegrityFailure as err:
                await self._quarantine(session, err)
                raise
            async with self._storage("mark_sent"):
                return await self._backend.set_status(
                    matched, RecordStatus.SENT
                )

    async def end_session(self, capture_id: str) -> int:
        """Purge all records and the capture window.

        Both deletions have completed when this returns.

        Returns:
            Number of records destroyed.

        Raises:
            StorageUnavailable: The purge failed; nothing was removed.
        """
        async with self._locks.acquire(capture_id):
            async with self._storage("purge"):
                purged = await self._backend.purge(capture_id)
        logger.debug(
            "Capture session %s purged (%d record(s))",
            session_ref(capture_id), purged,
        )
        return purged

    async def sweep(self, now: Optional[datetime] = None) -> dict:
        """Purge every capture window with ``expires_at < now``.

        One timestamp is used for the whole pass. Each window is re-checked
        under its lock before deletion.

        Returns:
            Stats dict with keys: sessions, records.
        """
        now = now or self._clock()
        stats = {"sessions": 0, "records": 0}
        async with self._storage("sweep"):
            candidates = await self._backend.expired(now)
        for capture_id in candidates:
            async with self._locks.acquire(capture_id):
                async with self._storage("sweep"):
                    session = await self._backend.get_session(capture_id)
                    if session is None or session.expires_at >= now:
                        continue
                    stats["records"] += await self._backend.purge(capture_id)
                stats["sessions"] += 1
        if stats["sessions"]:
            emit(self._audit, AuditEvent.SWEEP_COMPLETED, **stats)
            logger.info("Capture sweep complete: %s", stats)
        return stats

    async def log_delivery(
        self,
        capture_id: str,
        identity: str,
        phone: str,
        message: str,
        status: str
    ) -> DeliveryLogEntry:
        """Append one delivery attempt to the log with an encrypted recipient."""
        preview = message[:PREVIEW_LENGTH]
        if len(message) > PREVIEW_LENGTH:
            preview += "..."
        entry = DeliveryLogEntry(
            capture_id=capture_id,
            identity=identity,
            encrypted_recipient=self._cipher.encrypt(
                phone, field_aad(capture_id, "recipient")
            ),
            message_preview=preview,
            status=status,
            sent_at=self._clock(),
        )
        async with self._storage("log_delivery"):
            return await self._backend.append_delivery(entry)

    async def close(self) -> None:
        await self._backend.close()
