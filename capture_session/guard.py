"""
SessionGuard — login, per-request session checks, rotation and logout.

Provides the session API consumed by request handlers:
- ``login(username, secret)`` — authenticate, admit and open a capture window
- ``check(session_id)`` — enforce idle/absolute expiry, rotate identifiers
- ``logout(session_id)`` — purge captures, release the slot, destroy
- ``capture`` / ``read_active`` / ``mark_sent`` — capture store calls bound
  to a checked session

Lifecycle of a session::

    UNAUTHENTICATED -> ACTIVE -> ROTATION_DUE -> ACTIVE
                              -> IDLE_EXPIRED (terminal)
                              -> DESTROYED (terminal)

All work on one session id runs under that id's lock. After a rotation the
previous identifier is gone from storage, so any request still holding it
gets ``AuthRequired``.
"""
import uuid
import secrets
import logging
from typing import Any, Callable, Optional
from datetime import datetime, timedelta
from collections.abc import Awaitable

from .audit import AuditEvent, AuditSink, LoggingAuditSink, emit, session_ref
from .conf import SessionConfig
from .credentials import CredentialValidator
from .data import SessionData, SessionState
from .exceptions import (
    AdmissionDenied,
    AuthenticationFailed,
    AuthRequired,
    CaptureSessionError,
    IntegrityFailure,
    SessionExpired,
    SessionRotationFailed,
    StorageUnavailable,
)
from .locks import KeyedLock
from .registry import AdmissionController
from .storage import SessionStorage
from .vault.models import CapturedEntry, CapturedRecord, utcnow
from .vault.store import CaptureStore

logger = logging.getLogger("capture_session.guard")


class SessionGuard:
    """Per-request entry point for authenticated sessions.

    Args:
        validator: Credential validator used at login.
        admission: Concurrent-session admission controller.
        store: Capture store that owns each session's capture window.
        storage: Session storage; defaults to in-process storage.
        config: Timeouts; defaults to ``SessionConfig()``.
        audit: Audit sink; defaults to ``LoggingAuditSink``.
        clock: Returns the current aware datetime.
        id_factory: Produces new session identifiers.
    """

    def __init__(
        self,
        validator: CredentialValidator,
        admission: AdmissionController,
        store: CaptureStore,
        storage: Optional[SessionStorage] = None,
        config: Optional[SessionConfig] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._validator = validator
        self._admission = admission
        self._store = store
        self._storage = storage if storage is not None else SessionStorage()
        self._config = config or SessionConfig()
        self._audit = audit or LoggingAuditSink()
        self._clock = clock
        self._id_factory = id_factory or self._token
        self._idle = timedelta(seconds=self._config.idle_timeout)
        self._rotation = timedelta(seconds=self._config.rotation_interval)
        self._absolute = timedelta(seconds=self._config.absolute_timeout)
        self._locks = KeyedLock()

    @property
    def storage(self) -> SessionStorage:
        return self._storage

    @property
    def store(self) -> CaptureStore:
        return self._store

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _token(self) -> str:
        return secrets.token_urlsafe(self._config.session_id_bytes)

    def _new_session_id(self) -> str:
        session_id = self._id_factory()
        if session_id in self._storage:
            raise ValueError("session identifier collision")
        return session_id

    async def _load(self, session_id: str) -> Optional[SessionData]:
        try:
            return await self._storage.load(session_id)
        except RuntimeError as err:
            logger.error(
                "Unreadable session record %s: %s", session_ref(session_id), err
            )
            self._admission.release(session_id)
            await self._storage.delete(session_id)
            return None

    async def _save(self, session: SessionData) -> None:
        try:
            await self._storage.save(session)
        except Exception as err:
            logger.error(
                "Saving session %s failed: %s",
                session_ref(session.session_id), err,
            )
            raise StorageUnavailable(
                details={"operation": "save_session"}
            ) from err

    def _expiry_reason(self, session: SessionData, now: datetime) -> Optional[str]:
        if session.idle_for(now) > self._idle:
            return "idle"
        if session.age(now) > self._absolute:
            return "absolute"
        return None

    async def _teardown(
        self,
        session: SessionData,
        state: SessionState,
        reason: str
    ) -> int:
        """Make a session unusable, then purge its capture window.

        The session is gone before the purge runs, so a failed purge is
        logged and left to the store sweep (the window expires on its own).

        Caller must hold the session id lock.
        """
        self._admission.release(session.session_id)
        await self._storage.delete(session.session_id)
        session.invalidate()
        session.mark(state)
        purged = 0
        pending = False
        if session.capture_id:
            try:
                purged = await self._store.end_session(session.capture_id)
            except StorageUnavailable as err:
                pending = True
                logger.error(
                    "Purge for ended session %s failed: %s",
                    session_ref(session.session_id), err,
                )
        emit(
            self._audit,
            AuditEvent.SESSION_ENDED,
            user=session.identity,
            session_id=session.session_id,
            reason=reason,
            records_purged=purged,
            purge_pending=pending,
        )
        return purged

    async def _rotate(self, session: SessionData, now: datetime) -> SessionData:
        old_id = session.session_id
        try:
            rotated = session.rotated(self._new_session_id(), now)
            await self._storage.rotate(old_id, rotated)
        except Exception as err:
            logger.error(
                "Rotation of session %s failed: %s", session_ref(old_id), err
            )
            emit(
                self._audit,
                AuditEvent.SESSION_ROTATION_FAILED,
                user=session.identity,
                session_id=old_id,
                error=type(err).__name__,
            )
            await self._teardown(session, SessionState.DESTROYED, "rotation_failed")
            raise SessionRotationFailed(
                details={"session": session_ref(old_id)}
            ) from err
        self._admission.registry.rekey(old_id, rotated.session_id)
        rotated.mark(SessionState.ACTIVE)
        emit(
            self._audit,
            AuditEvent.SESSION_ROTATED,
            user=rotated.identity,
            session_id=rotated.session_id,
            previous=session_ref(old_id),
        )
        return rotated

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def login(
        self,
        username: str,
        secret: str,
        origin: Optional[dict[str, Any]] = None,
        previous_session_id: Optional[str] = None,
    ) -> SessionData:
        """Authenticate an operator and open a fresh session.

        Args:
            username: Operator name.
            secret: Presented secret.
            origin: Request metadata kept in the active session registry
                (e.g. remote address, user agent).
            previous_session_id: Identifier the client held before login;
                it is destroyed and never reused.

        Returns:
            The new, usable session.

        Raises:
            AuthenticationFailed: Unknown username or wrong secret.
            AdmissionDenied: The operator holds its maximum of sessions.
            StorageUnavailable: The capture window could not be opened.
        """
        if previous_session_id:
            await self.destroy(previous_session_id, reason="login")
        credential = await self._validator.validate(username, secret)
        if credential is None:
            emit(
                self._audit,
                AuditEvent.LOGIN_FAILED,
                user=username,
                reason="invalid credentials",
                origin=origin or {},
            )
            raise AuthenticationFailed()
        now = self._clock()
        session = SessionData(
            id=self._new_session_id(),
            identity=credential.username,
            role=credential.role,
            capture_id=uuid.uuid4().hex,
            now=now,
        )
        try:
            await self._admission.admit(
                credential.username, session.session_id,
                origin=origin, started_at=now,
            )
        except AdmissionDenied as err:
            emit(
                self._audit,
                AuditEvent.ADMISSION_DENIED,
                user=credential.username,
                active=err.details.get("active"),
                allowed=err.details.get("allowed"),
            )
            raise
        try:
            await self._store.create_capture_session(
                session.capture_id, credential.username
            )
        except CaptureSessionError:
            self._admission.release(session.session_id)
            raise
        try:
            await self._save(session)
        except StorageUnavailable:
            self._admission.release(session.session_id)
            await self._store.end_session(session.capture_id)
            raise
        emit(
            self._audit,
            AuditEvent.LOGIN_SUCCESS,
            user=credential.username,
            session_id=session.session_id,
            role=credential.role,
        )
        logger.info(
            "Login %s for %s", session_ref(session.session_id), credential.username
        )
        return session

    async def check(self, session_id: Optional[str]) -> SessionData:
        """Validate a session for one protected request.

        Returns:
            The session to use for the rest of the request. Its
            ``session_id`` differs from the one passed in when the
            identifier was rotated; the old one is no longer valid.

        Raises:
            AuthRequired: No such session, or it carries no identity.
            SessionExpired: Idle or absolute lifetime exceeded; destroyed.
            SessionRotationFailed: Rotation failed; destroyed.
        """
        if not session_id:
            raise AuthRequired()
        async with self._locks.acquire(session_id):
            session = await self._load(session_id)
            if session is None or not session.identity:
                raise AuthRequired(details={"session": session_ref(session_id)})
            now = self._clock()
            reason = self._expiry_reason(session, now)
            if reason is not None:
                idle = int(session.idle_for(now).total_seconds())
                emit(
                    self._audit,
                    AuditEvent.SESSION_EXPIRED,
                    user=session.identity,
                    session_id=session_id,
                    reason=reason,
                    idle_seconds=idle,
                )
                await self._teardown(session, SessionState.IDLE_EXPIRED, reason)
                raise SessionExpired(
                    details={"session": session_ref(session_id), "reason": reason}
                )
            session.touch(now)
            if session.rotation_due(now, self._rotation):
                session.mark(SessionState.ROTATION_DUE)
                return await self._rotate(session, now)
            await self._save(session)
        return session

    async def logout(self, session_id: Optional[str]) -> int:
        """Purge the session's captures and destroy it.

        The capture window is purged first; if that fails the session is
        left untouched and the error propagates, so logout can be retried.

        Returns:
            Number of captured records destroyed.

        Raises:
            AuthRequired: No such session.
            StorageUnavailable: Purge failed.
        """
        if not session_id:
            raise AuthRequired()
        async with self._locks.acquire(session_id):
            session = await self._load(session_id)
            if session is None:
                raise AuthRequired(details={"session": session_ref(session_id)})
            purged = 0
            if session.capture_id:
                purged = await self._store.end_session(session.capture_id)
            self._admission.release(session_id)
            await self._storage.delete(session_id)
            session.invalidate()
        emit(
            self._audit,
            AuditEvent.SESSION_ENDED,
            user=session.identity,
            session_id=session_id,
            reason="logout",
            records_purged=purged,
        )
        logger.info("Logout %s for %s", session_ref(session_id), session.identity)
        return purged

    async def destroy(self, session_id: str, reason: str = "destroyed") -> bool:
        """Destroy a session if it exists.

        Returns:
            True when a session was destroyed.
        """
        async with self._locks.acquire(session_id):
            session = await self._load(session_id)
            if session is None:
                return False
            await self._teardown(session, SessionState.DESTROYED, reason)
        return True

    async def expire_idle(self, now: Optional[datetime] = None) -> int:
        """Destroy every stored session past its idle or absolute limit.

        Returns:
            Number of sessions destroyed.
        """
        now = now or self._clock()
        expired = 0
        for session_id in await self._storage.session_ids():
            async with self._locks.acquire(session_id):
                session = await self._load(session_id)
                if session is None:
                    continue
                reason = self._expiry_reason(session, now)
                if reason is None:
                    continue
                emit(
                    self._audit,
                    AuditEvent.SESSION_EXPIRED,
                    user=session.identity,
                    session_id=session_id,
                    reason=reason,
                )
                expired += 1
                await self._teardown(session, SessionState.IDLE_EXPIRED, reason)
        return expired

    # ------------------------------------------------------------------
    # Capture operations bound to a checked session
    # ------------------------------------------------------------------

    def _require(self, session: SessionData) -> str:
        """Capture id of a session that is authenticated and still stored.

        A copy held from before a rotation or teardown is rejected.
        """
        if (
            not session.authenticated
            or not session.capture_id
            or session.session_id not in self._storage
        ):
            raise AuthRequired(details={"session": session_ref(session.session_id)})
        return session.capture_id

    async def _guarded(self, session: SessionData, operation: Awaitable) -> Any:
        try:
            return await operation
        except IntegrityFailure:
            try:
                await self.destroy(session.session_id, reason="integrity_failure")
            except CaptureSessionError as err:
                logger.error(
                    "Teardown after integrity failure of %s: %s",
                    session_ref(session.session_id), err,
                )
            session.invalidate()
            raise

    async def capture(
        self,
        session: SessionData,
        phone: str,
        code: str
    ) -> CapturedRecord:
        """Store a verified phone/code pair in the session's capture window."""
        capture_id = self._require(session)
        return await self._guarded(
            session, self._store.capture(capture_id, phone, code)
        )

    async def read_active(self, session: SessionData) -> list[CapturedEntry]:
        """Decrypted unsent captures of the session's own window.

        An integrity failure destroys the whole session.
        """
        capture_id = self._require(session)
        return await self._guarded(
            session, self._store.read_active(capture_id, session.identity)
        )

    async def mark_sent(self, session: SessionData, phone: str) -> int:
        capture_id = self._require(session)
        return await self._guarded(
            session, self._store.mark_sent(capture_id, phone)
        )
