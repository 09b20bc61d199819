"""Shared fixtures: a controllable clock, a recording audit sink, and a wired guard."""
import base64
from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher, Type

from capture_session.audit import AuditEvent, AuditRecord
from capture_session.conf import SessionConfig
from capture_session.credentials import (
    Credential,
    CredentialRegistry,
    CredentialValidator,
)
from capture_session.guard import SessionGuard
from capture_session.registry import ActiveSessionRegistry, AdmissionController
from capture_session.storage import SessionStorage
from capture_session.vault.backends import MemoryCaptureBackend
from capture_session.vault.crypto import FieldCipher
from capture_session.vault.store import CaptureStore

TEST_KEY = bytes(range(32))
PASSWORD = "correct horse battery"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingAuditSink:
    """Keeps every emitted audit record."""

    def __init__(self):
        self.records: list[AuditRecord] = []

    def emit(self, record: AuditRecord) -> None:
        self.records.append(record)

    def actions(self) -> list[AuditEvent]:
        return [r.action for r in self.records]

    def of(self, action: AuditEvent) -> list[AuditRecord]:
        return [r for r in self.records if r.action == action]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture(scope="session")
def hasher():
    """Cheap Argon2id parameters to keep the suite fast."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture(scope="session")
def password():
    return PASSWORD


@pytest.fixture(scope="session")
def password_hash(hasher):
    return hasher.hash(PASSWORD)


@pytest.fixture
def credentials(password_hash):
    return CredentialRegistry([
        Credential(
            username="demo.admin",
            password_hash=password_hash,
            role="admin",
            allowed_sessions=5,
        ),
        Credential(
            username="demo.operator",
            password_hash=password_hash,
            role="operator",
            allowed_sessions=3,
        ),
        Credential(
            username="solo.operator",
            password_hash=password_hash,
            allowed_sessions=1,
        ),
    ])


@pytest.fixture
def validator(credentials, hasher):
    return CredentialValidator(credentials, hasher=hasher)


@pytest.fixture
def active_sessions():
    return ActiveSessionRegistry()


@pytest.fixture
def admission(credentials, active_sessions):
    return AdmissionController(credentials, active_sessions)


@pytest.fixture
def encryption_key():
    return TEST_KEY


@pytest.fixture
def cipher(encryption_key):
    return FieldCipher(encryption_key)


@pytest.fixture
def backend():
    return MemoryCaptureBackend()


@pytest.fixture
def store(cipher, backend, audit, clock):
    return CaptureStore(cipher, backend=backend, audit=audit, clock=clock)


@pytest.fixture
def storage():
    return SessionStorage()


@pytest.fixture
def guard(validator, admission, store, storage, audit, clock):
    return SessionGuard(
        validator,
        admission,
        store,
        storage=storage,
        config=SessionConfig(),
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def encoded_key():
    return base64.b64encode(TEST_KEY).decode("ascii")
