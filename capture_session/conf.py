"""
Session Configuration — timeouts and identifiers for the session guard.

Reads settings from environment variables:
    SESSION_IDLE_TIMEOUT = <seconds>        (default 1800)
    SESSION_ROTATION_INTERVAL = <seconds>   (default 900)
    SESSION_ABSOLUTE_TIMEOUT = <seconds>    (default 28800)
    SESSION_ID_BYTES = <bytes of entropy>   (default 32)
"""
import os
import logging

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("capture_session.conf")

# Keys of the persisted session record.
SESSION_ID = 'session_id'
SESSION_KEY = 'identity'
SESSION_ROLE = 'role'
SESSION_CAPTURE = 'capture_id'

IDLE_TIMEOUT = 30 * 60
ROTATION_INTERVAL = 15 * 60
ABSOLUTE_TIMEOUT = 8 * 60 * 60
SESSION_ID_BYTES = 32


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError as err:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from err


class SessionConfig(BaseModel):
    """Validated session guard configuration (all durations in seconds)."""

    idle_timeout: int = Field(default=IDLE_TIMEOUT, ge=1)
    rotation_interval: int = Field(default=ROTATION_INTERVAL, ge=1)
    absolute_timeout: int = Field(default=ABSOLUTE_TIMEOUT, ge=1)
    session_id_bytes: int = Field(default=SESSION_ID_BYTES, ge=16, le=128)

    @model_validator(mode="after")
    def validate_ordering(self) -> "SessionConfig":
        """Rotation must happen before a session can idle out."""
        if self.rotation_interval >= self.idle_timeout:
            logger.warning(
                "rotation_interval (%ds) >= idle_timeout (%ds); "
                "sessions will expire before they rotate",
                self.rotation_interval, self.idle_timeout,
            )
        if self.absolute_timeout < self.idle_timeout:
            raise ValueError(
                "absolute_timeout must not be shorter than idle_timeout"
            )
        return self

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Create SessionConfig by loading values from environment.

        Returns:
            Populated SessionConfig instance.
        """
        return cls(
            idle_timeout=_env_int("SESSION_IDLE_TIMEOUT", IDLE_TIMEOUT),
            rotation_interval=_env_int(
                "SESSION_ROTATION_INTERVAL", ROTATION_INTERVAL
            ),
            absolute_timeout=_env_int(
                "SESSION_ABSOLUTE_TIMEOUT", ABSOLUTE_TIMEOUT
            ),
            session_id_bytes=_env_int("SESSION_ID_BYTES", SESSION_ID_BYTES),
        )
