"""Tests for environment-driven configuration."""
import base64

import pytest
from pydantic import ValidationError

from capture_session.conf import SessionConfig
from capture_session.vault.config import (
    KEY_LENGTH,
    VaultConfig,
    generate_encryption_key,
    load_encryption_key,
)
from capture_session.vault.store import CaptureStore

ENV_VARS = (
    "CAPTURE_ENCRYPTION_KEY",
    "CAPTURE_ALLOW_EPHEMERAL_KEY",
    "CAPTURE_CIPHER_BACKEND",
    "CAPTURE_TTL",
    "CAPTURE_SWEEP_INTERVAL",
    "SESSION_IDLE_TIMEOUT",
    "SESSION_ROTATION_INTERVAL",
    "SESSION_ABSOLUTE_TIMEOUT",
    "SESSION_ID_BYTES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestEncryptionKey:
    def test_generated_key_decodes(self):
        assert len(base64.b64decode(generate_encryption_key())) == KEY_LENGTH

    def test_loads_configured_key(self, monkeypatch, encoded_key, encryption_key):
        monkeypatch.setenv("CAPTURE_ENCRYPTION_KEY", encoded_key)
        assert load_encryption_key() == (encryption_key, False)

    def test_missing_key_refuses_to_start(self):
        with pytest.raises(RuntimeError):
            load_encryption_key()

    def test_ephemeral_key_needs_opt_in(self):
        key, ephemeral = load_encryption_key(allow_ephemeral=True)
        assert ephemeral is True
        assert len(key) == KEY_LENGTH

    def test_wrong_length(self, monkeypatch):
        monkeypatch.setenv(
            "CAPTURE_ENCRYPTION_KEY", base64.b64encode(b"x" * 16).decode()
        )
        with pytest.raises(ValueError):
            load_encryption_key()


class TestVaultConfig:
    def test_from_env(self, monkeypatch, encoded_key, encryption_key):
        monkeypatch.setenv("CAPTURE_ENCRYPTION_KEY", encoded_key)
        monkeypatch.setenv("CAPTURE_CIPHER_BACKEND", "ChaCha20")
        monkeypatch.setenv("CAPTURE_TTL", "600")
        config = VaultConfig.from_env()
        assert config.encryption_key == encryption_key
        assert config.ephemeral_key is False
        assert config.cipher_backend == "chacha20"
        assert config.capture_ttl == 600
        assert config.sweep_interval == 300

    def test_ephemeral_opt_in(self, monkeypatch):
        monkeypatch.setenv("CAPTURE_ALLOW_EPHEMERAL_KEY", "yes")
        assert VaultConfig.from_env().ephemeral_key is True

    def test_missing_key(self):
        with pytest.raises(RuntimeError):
            VaultConfig.from_env()

    def test_key_not_in_repr(self, encryption_key):
        config = VaultConfig(encryption_key=encryption_key)
        assert "encryption_key" not in repr(config)

    def test_invalid_values(self, encryption_key):
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=b"short")
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=encryption_key, cipher_backend="des")
        with pytest.raises(ValidationError):
            VaultConfig(encryption_key=encryption_key, capture_ttl=0)

    async def test_store_from_config(self, encryption_key, clock):
        config = VaultConfig(encryption_key=encryption_key, capture_ttl=60)
        store = CaptureStore.from_config(config, clock=clock)
        session = await store.create_capture_session("cap-1", "demo.operator")
        assert (session.expires_at - session.created_at).total_seconds() == 60


class TestSessionConfig:
    def test_defaults(self):
        config = SessionConfig()
        assert config.idle_timeout == 1800
        assert config.rotation_interval == 900
        assert config.absolute_timeout == 28800
        assert config.session_id_bytes == 32

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SESSION_IDLE_TIMEOUT", "600")
        monkeypatch.setenv("SESSION_ROTATION_INTERVAL", "120")
        config = SessionConfig.from_env()
        assert config.idle_timeout == 600
        assert config.rotation_interval == 120
        assert config.absolute_timeout == 28800

    def test_non_integer_env(self, monkeypatch):
        monkeypatch.setenv("SESSION_IDLE_TIMEOUT", "soon")
        with pytest.raises(ValueError):
            SessionConfig.from_env()

    def test_absolute_shorter_than_idle(self):
        with pytest.raises(ValidationError):
            SessionConfig(idle_timeout=1800, absolute_timeout=600)

    def test_short_identifiers_rejected(self):
        with pytest.raises(ValidationError):
            SessionConfig(session_id_bytes=8)
