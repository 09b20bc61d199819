"""Tests for message dispatch to captured recipients."""
import pytest

from capture_session.audit import AuditEvent
from capture_session.exceptions import StorageUnavailable, ValidationFailed
from capture_session.messaging import (
    MAX_MESSAGE_LENGTH,
    MessageDispatcher,
    mask_phone,
    personalize,
    sanitize_message,
)

ALICE = "+15551234567"
BOB = "+15557654321"


class FakeSender:
    """Records deliveries; fails for numbers listed in ``failing``."""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    async def send(self, to, message):
        if to in self.failing:
            raise ConnectionError("provider rejected the message")
        self.sent.append((to, message))
        return f"SM{len(self.sent):04d}"


@pytest.fixture
async def session(guard, password):
    session = await guard.login("demo.operator", password)
    await guard.capture(session, ALICE, "ABC123")
    await guard.capture(session, BOB, "XYZ789")
    return session


class TestHelpers:
    def test_mask_phone(self):
        assert mask_phone("+15551234567") == "+155****4567"
        assert mask_phone("12345") == "12345"

    def test_sanitize(self):
        assert sanitize_message("<b>hi</b>") == "bhi/b"
        assert len(sanitize_message("x" * 2000)) == MAX_MESSAGE_LENGTH

    def test_personalize(self):
        assert personalize("Stay safe", "ABC123") == "Stay safe\n\nSafety Code: ABC123"


class TestMessageDispatcher:
    async def test_sends_personalized_messages(self, guard, session, audit):
        sender = FakeSender()
        report = await MessageDispatcher(guard, sender, audit=audit).send(
            session, "Check in please"
        )

        assert sorted(sender.sent) == sorted([
            (ALICE, "Check in please\n\nSafety Code: ABC123"),
            (BOB, "Check in please\n\nSafety Code: XYZ789"),
        ])
        assert report.summary() == {"total": 2, "sent": 2, "failed": 0}
        assert ALICE not in report.model_dump_json()
        assert await guard.read_active(session) == []
        assert len(audit.of(AuditEvent.MESSAGE_SENT)) == 2
        (done,) = audit.of(AuditEvent.MESSAGES_SENT)
        assert done.details == {"count": 2, "success_count": 2}

    async def test_failed_delivery_stays_unsent(self, guard, store, session, audit):
        sender = FakeSender(failing={BOB})
        report = await MessageDispatcher(guard, sender, audit=audit).send(
            session, "Check in please"
        )

        assert report.summary() == {"total": 2, "sent": 1, "failed": 1}
        remaining = await guard.read_active(session)
        assert [e.phone for e in remaining] == [BOB]
        statuses = sorted(d.status for d in store.backend.deliveries())
        assert statuses == ["failed", "sent"]
        (failed,) = audit.of(AuditEvent.MESSAGE_FAILED)
        assert failed.details["error"] == "ConnectionError"

    async def test_status_update_failure_still_logged(
        self, guard, store, session, audit, monkeypatch
    ):
        async def broken(capture_id, phone):
            raise StorageUnavailable(details={"operation": "mark_sent"})

        monkeypatch.setattr(store, "mark_sent", broken)
        sender = FakeSender()
        report = await MessageDispatcher(guard, sender, audit=audit).send(
            session, "Check in please"
        )

        assert len(sender.sent) == 2
        assert report.summary() == {"total": 2, "sent": 2, "failed": 0}
        assert [d.status for d in store.backend.deliveries()] == ["sent", "sent"]
        sent = audit.of(AuditEvent.MESSAGE_SENT)
        assert [r.details["status_updated"] for r in sent] == [False, False]
        (done,) = audit.of(AuditEvent.MESSAGES_SENT)
        assert done.details == {"count": 2, "success_count": 2}
        # both captures stay unsent
        assert len(await guard.read_active(session)) == 2

    async def test_log_write_failure_does_not_stop_dispatch(
        self, guard, store, session, audit, monkeypatch
    ):
        async def broken(*args):
            raise StorageUnavailable(details={"operation": "log_delivery"})

        monkeypatch.setattr(store, "log_delivery", broken)
        sender = FakeSender(failing={ALICE})
        report = await MessageDispatcher(guard, sender, audit=audit).send(
            session, "Check in please"
        )

        assert report.summary() == {"total": 2, "sent": 1, "failed": 1}
        assert len(audit.of(AuditEvent.MESSAGES_SENT)) == 1
        assert [e.phone for e in await guard.read_active(session)] == [ALICE]

    async def test_empty_message(self, guard, session):
        with pytest.raises(ValidationFailed):
            await MessageDispatcher(guard, FakeSender()).send(session, "  <> ")

    async def test_no_recipients(self, guard, password):
        session = await guard.login("demo.admin", password)
        with pytest.raises(ValidationFailed) as err:
            await MessageDispatcher(guard, FakeSender()).send(session, "hello")
        assert err.value.details == {"reason": "no_recipients"}
