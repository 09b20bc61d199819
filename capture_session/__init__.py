"""Capture Session — operator sessions bound to encrypted two-factor captures.

A login opens a session guarded against idling, fixation and over-use, and a
capture window in which phone numbers and safety codes are stored encrypted.
Logout, idle expiry and the background sweep destroy both.
"""
from .version import __version__
from .conf import SessionConfig
from .data import SessionData, SessionState
from .audit import AuditEvent, AuditRecord, AuditSink, LoggingAuditSink
from .credentials import Credential, CredentialRegistry, CredentialValidator
from .registry import ActiveSessionEntry, ActiveSessionRegistry, AdmissionController
from .storage import SessionStorage
from .guard import SessionGuard
from .messaging import MessageDispatcher, MessageSender, DispatchReport
from .exceptions import (
    CaptureSessionError,
    AuthRequired,
    AuthenticationFailed,
    SessionExpired,
    SessionRotationFailed,
    AdmissionDenied,
    ValidationFailed,
    SessionNotFound,
    IntegrityFailure,
    StorageUnavailable,
)

__all__ = [
    "__version__",
    "SessionConfig",
    "SessionData",
    "SessionState",
    "AuditEvent",
    "AuditRecord",
    "AuditSink",
    "LoggingAuditSink",
    "Credential",
    "CredentialRegistry",
    "CredentialValidator",
    "ActiveSessionEntry",
    "ActiveSessionRegistry",
    "AdmissionController",
    "SessionStorage",
    "SessionGuard",
    "MessageDispatcher",
    "MessageSender",
    "DispatchReport",
    "CaptureSessionError",
    "AuthRequired",
    "AuthenticationFailed",
    "SessionExpired",
    "SessionRotationFailed",
    "AdmissionDenied",
    "ValidationFailed",
    "SessionNotFound",
    "IntegrityFailure",
    "StorageUnavailable",
]
