"""Tests for credential provisioning and secret verification."""
import orjson
import pytest

from capture_session.credentials import (
    Credential,
    CredentialRegistry,
    CredentialValidator,
)


class TestCredentialRegistry:
    def test_lookup(self, credentials):
        assert credentials.lookup("demo.operator").allowed_sessions == 3
        assert credentials.lookup("demo.admin").role == "admin"
        assert credentials.lookup("nobody") is None
        assert "solo.operator" in credentials
        assert len(credentials) == 3

    def test_placeholder_hash_rejected(self):
        with pytest.raises(ValueError):
            CredentialRegistry([
                Credential(
                    username="demo.operator",
                    password_hash="$2b$10$YourHashedPasswordHere",
                )
            ])

    def test_duplicate_rejected(self, credentials, password_hash):
        with pytest.raises(ValueError):
            credentials.add(
                Credential(username="demo.admin", password_hash=password_hash)
            )

    def test_zero_allowance_rejected(self, password_hash):
        with pytest.raises(ValueError):
            CredentialRegistry([
                Credential(
                    username="x", password_hash=password_hash, allowed_sessions=0
                )
            ])

    def test_from_file(self, tmp_path, password_hash):
        path = tmp_path / "operators.json"
        path.write_bytes(orjson.dumps([
            {"username": "a", "password_hash": password_hash},
            {
                "username": "b",
                "password_hash": password_hash,
                "role": "admin",
                "allowed_sessions": 4,
            },
        ]))
        registry = CredentialRegistry.from_file(path)
        assert len(registry) == 2
        assert registry.lookup("a").allowed_sessions == 1
        assert registry.lookup("b").allowed_sessions == 4

    def test_from_file_requires_list(self, tmp_path):
        path = tmp_path / "operators.json"
        path.write_bytes(orjson.dumps({"username": "a"}))
        with pytest.raises(ValueError):
            CredentialRegistry.from_file(path)


class TestCredentialValidator:
    async def test_valid_secret(self, validator, password):
        credential = await validator.validate("demo.operator", password)
        assert credential.username == "demo.operator"

    async def test_wrong_secret(self, validator):
        assert await validator.validate("demo.operator", "wrong") is None

    async def test_unknown_user_uses_decoy(self, validator, password, monkeypatch):
        calls = []
        original = validator._verify

        def spy(stored_hash, secret):
            calls.append(stored_hash)
            return original(stored_hash, secret)

        monkeypatch.setattr(validator, "_verify", spy)
        assert await validator.validate("nobody", password) is None
        assert calls == [validator._decoy_hash]

    def test_hash_secret_verifies(self, validator, credentials, password):
        hashed = validator.hash_secret("another secret")
        credentials.add(Credential(username="new.operator", password_hash=hashed))
        assert validator.check("new.operator", "another secret") is not None
        assert validator.check("new.operator", password) is None

    def test_same_result_for_both_failures(self, validator):
        assert validator.check("nobody", "x") == validator.check("demo.admin", "x")
