"""
Capture Session Exceptions.

Every failure leaving the package is one of these types. ``public_message``
is the only text safe to show a client: it never says which of username or
secret was wrong, which record failed integrity, or which identity hit its
session limit. Internal context lives in ``details`` and goes to the audit
sink and the log.
"""
from typing import Any, Optional


class CaptureSessionError(Exception):
    """Base exception for all capture session errors."""

    code: str = "CAPTURE_ERROR"
    public_message: str = "Request could not be completed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None
    ):
        self.message = message or self.public_message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_public(self) -> dict[str, str]:
        """Return the non-enumerating error body for clients."""
        return {"error": self.public_message, "code": self.code}


class AuthRequired(CaptureSessionError):
    """No valid session, or the session carries no claims."""
    code = "AUTH_REQUIRED"
    public_message = "Authentication required"


class AuthenticationFailed(AuthRequired):
    """Login rejected; deliberately silent about which credential failed."""
    code = "AUTH_FAILED"
    public_message = "Invalid credentials"


class SessionExpired(CaptureSessionError):
    """Session exceeded its idle (or absolute) lifetime and was destroyed."""
    code = "SESSION_EXPIRED"
    public_message = "Session expired"


class SessionRotationFailed(CaptureSessionError):
    """Identifier rotation failed; the session has been destroyed."""
    code = "SESSION_ROTATION_FAILED"
    public_message = "Session could not be renewed"


class AdmissionDenied(CaptureSessionError):
    """Identity already holds its maximum number of concurrent sessions."""
    code = "MAX_SESSIONS"
    public_message = "Maximum concurrent sessions exceeded"


class ValidationFailed(CaptureSessionError):
    """Input rejected by a validation step; never retried here."""
    code = "VALIDATION_FAILED"
    public_message = "Validation failed"


class SessionNotFound(CaptureSessionError):
    """No live capture session exists for the given id."""
    code = "SESSION_NOT_FOUND"
    public_message = "Session not found"


class IntegrityFailure(CaptureSessionError):
    """Stored ciphertext failed authentication (tamper or corruption)."""
    code = "INTEGRITY_FAILURE"
    public_message = "Stored data could not be verified"


class StorageUnavailable(CaptureSessionError):
    """Transient storage failure; callers may retry with backoff."""
    code = "STORAGE_UNAVAILABLE"
    public_message = "Service temporarily unavailable"
