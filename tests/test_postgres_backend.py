"""Tests for the PostgreSQL capture backend against a recording fake pool."""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from capture_session.vault.backends import PostgresCaptureBackend, _affected
from capture_session.vault.models import (
    CaptureSession,
    CapturedRecord,
    RecordStatus,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def start(self):
        self.conn.events.append("begin")

    async def commit(self):
        self.conn.events.append("commit")

    async def rollback(self):
        self.conn.events.append("rollback")


class FakeConnection:
    """Answers queries from canned results and records every statement."""

    def __init__(self):
        self.events = []
        self.rows = []
        self.value = None
        self.fail_on = None

    def transaction(self):
        return FakeTransaction(self)

    async def execute(self, query, *args):
        self.events.append((query.split()[0], args))
        if self.fail_on and self.fail_on in query:
            raise ConnectionError("connection reset")
        return "DELETE 2" if query.strip().startswith("DELETE") else "UPDATE 1"

    async def fetch(self, query, *args):
        self.events.append(("FETCH", args))
        return self.rows

    async def fetchrow(self, query, *args):
        self.events.append(("FETCHROW", args))
        return self.rows[0] if self.rows else None

    async def fetchval(self, query, *args):
        self.events.append(("FETCHVAL", args))
        return self.value


class FakePool:
    def __init__(self):
        self.conn = FakeConnection()
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self):
        self.closed = True


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def pg(pool):
    return PostgresCaptureBackend(pool)


class TestPostgresCaptureBackend:
    async def test_purge_commits(self, pg, pool):
        assert await pg.purge("cap-1") == 2
        events = pool.conn.events
        assert events[0] == "begin"
        assert [e[0] for e in events[1:3]] == ["DELETE", "DELETE"]
        assert events[-1] == "commit"

    async def test_purge_rolls_back(self, pg, pool):
        pool.conn.fail_on = "capture_sessions"
        with pytest.raises(ConnectionError):
            await pg.purge("cap-1")
        assert pool.conn.events[-1] == "rollback"
        assert "commit" not in pool.conn.events

    async def test_get_session(self, pg, pool):
        assert await pg.get_session("cap-1") is None
        pool.conn.rows = [{
            "capture_id": "cap-1",
            "identity": "demo.operator",
            "created_at": NOW,
            "expires_at": NOW + timedelta(minutes=30),
        }]
        session = await pg.get_session("cap-1")
        assert isinstance(session, CaptureSession)
        assert session.identity == "demo.operator"

    async def test_insert_record_returns_id(self, pg, pool):
        pool.conn.value = 41
        record = CapturedRecord(
            capture_id="cap-1",
            encrypted_phone=b"\x00" * 40,
            encrypted_code=b"\x01" * 34,
            created_at=NOW,
        )
        stored = await pg.insert_record(record)
        assert stored.id == 41
        assert pool.conn.events[-1][1][3] == "new"

    async def test_list_records_filters_status(self, pg, pool):
        await pg.list_records("cap-1", RecordStatus.NEW)
        await pg.list_records("cap-1")
        assert pool.conn.events == [
            ("FETCH", ("cap-1", "new")),
            ("FETCH", ("cap-1",)),
        ]

    async def test_set_status(self, pg, pool):
        assert await pg.set_status([], RecordStatus.SENT) == 0
        assert pool.conn.events == []
        assert await pg.set_status([1, 2], RecordStatus.SENT) == 1
        assert pool.conn.events[-1] == ("UPDATE", ("sent", [1, 2]))

    async def test_expired(self, pg, pool):
        pool.conn.rows = [{"capture_id": "a"}, {"capture_id": "b"}]
        assert await pg.expired(NOW) == ["a", "b"]

    async def test_close(self, pg, pool):
        await pg.close()
        assert pool.closed


@pytest.mark.parametrize(
    "status, expected",
    [("DELETE 3", 3), ("UPDATE 0", 0), ("", 0), (None, 0)],
)
def test_affected(status, expected):
    assert _affected(status) == expected
