"""
Vault Configuration — Encryption key loading and validated settings.

Reads settings from environment variables:
    CAPTURE_ENCRYPTION_KEY = <base64-encoded 32-byte key>
    CAPTURE_ALLOW_EPHEMERAL_KEY = 1|true|yes   (opt-in, see below)
    CAPTURE_CIPHER_BACKEND = aesgcm|chacha20
    CAPTURE_TTL = <seconds>                    (default 1800)
    CAPTURE_SWEEP_INTERVAL = <seconds>         (default 300)

Without a configured key nothing starts, unless the operator explicitly opts
into an ephemeral key: a random key that lives only in this process, so every
capture becomes unreadable after a restart.

Security Note:
    Never log key material.
"""
import os
import base64
import secrets
import logging

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("capture_session.vault")

KEY_LENGTH = 32  # AES-256
CAPTURE_TTL = 30 * 60
SWEEP_INTERVAL = 5 * 60

_TRUTHY = ("1", "true", "yes", "on")


def generate_encryption_key() -> str:
    """Generate a random 32-byte key and return it as a base64 string.

    This is a utility for operators to generate new keys.

    Returns:
        Base64-encoded 32-byte key string.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def load_encryption_key(allow_ephemeral: bool = False) -> tuple[bytes, bool]:
    """Load the process-wide capture key from CAPTURE_ENCRYPTION_KEY.

    Args:
        allow_ephemeral: Generate a process-local key when none is configured.

    Returns:
        Tuple of (key_bytes, ephemeral).

    Raises:
        RuntimeError: If no key is configured and ephemeral keys are not allowed.
        ValueError: If the key does not decode to exactly 32 bytes.
    """
    raw = os.environ.get("CAPTURE_ENCRYPTION_KEY")
    if raw:
        key = base64.b64decode(raw)
        if len(key) != KEY_LENGTH:
            raise ValueError(
                f"CAPTURE_ENCRYPTION_KEY must decode to exactly {KEY_LENGTH} "
                f"bytes, got {len(key)}"
            )
        return key, False
    if not allow_ephemeral:
        raise RuntimeError(
            "No capture encryption key configured. "
            "Set CAPTURE_ENCRYPTION_KEY=<base64-encoded-32-byte-key>, or set "
            "CAPTURE_ALLOW_EPHEMERAL_KEY=1 to accept that captured data is "
            "lost on restart"
        )
    logger.warning(
        "Using an ephemeral capture encryption key: "
        "captured data will be unreadable after this process exits"
    )
    return secrets.token_bytes(KEY_LENGTH), True


class VaultConfig(BaseModel):
    """Validated capture store configuration."""

    encryption_key: bytes = Field(repr=False)
    ephemeral_key: bool = False
    cipher_backend: str = Field(default="aesgcm")
    capture_ttl: int = Field(default=CAPTURE_TTL, ge=1)
    sweep_interval: int = Field(default=SWEEP_INTERVAL, ge=1)

    @field_validator("encryption_key")
    @classmethod
    def validate_key(cls, v: bytes) -> bytes:
        """Key must be exactly 32 bytes."""
        if len(v) != KEY_LENGTH:
            raise ValueError(
                f"encryption_key must be {KEY_LENGTH} bytes, got {len(v)}"
            )
        return v

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        allow_ephemeral = os.environ.get(
            "CAPTURE_ALLOW_EPHEMERAL_KEY", ""
        ).lower() in _TRUTHY
        key, ephemeral = load_encryption_key(allow_ephemeral=allow_ephemeral)
        return cls(
            encryption_key=key,
            ephemeral_key=ephemeral,
            cipher_backend=os.environ.get("CAPTURE_CIPHER_BACKEND", "aesgcm"),
            capture_ttl=int(os.environ.get("CAPTURE_TTL", CAPTURE_TTL)),
            sweep_interval=int(
                os.environ.get("CAPTURE_SWEEP_INTERVAL", SWEEP_INTERVAL)
            ),
        )
