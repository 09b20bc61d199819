"""Tests for the background capture sweeper."""
import asyncio

from capture_session.vault.sweeper import CaptureSweeper

PHONE = "+15551234567"


class TestRunOnce:
    async def test_sweeps_store_only(self, store, clock):
        await store.create_capture_session("cap-1", "demo.operator")
        await store.capture("cap-1", PHONE, "ABC123")
        clock.advance(minutes=31)

        stats = await CaptureSweeper(store).run_once()

        assert stats == {"sessions": 1, "records": 1, "idle_sessions": 0}

    async def test_expires_idle_guard_sessions(
        self, guard, store, clock, admission, password
    ):
        session = await guard.login("solo.operator", password)
        await guard.capture(session, PHONE, "ABC123")
        clock.advance(minutes=31)

        stats = await CaptureSweeper(store, guard=guard).run_once()

        # the store sweep removed the window before the guard saw the session
        assert stats == {"sessions": 1, "records": 1, "idle_sessions": 1}
        assert admission.registry.count("solo.operator") == 0
        assert len(guard.storage) == 0

    async def test_live_data_untouched(self, store, clock):
        await store.create_capture_session("cap-1", "demo.operator")
        await store.capture("cap-1", PHONE, "ABC123")
        clock.advance(minutes=29)
        stats = await CaptureSweeper(store).run_once()
        assert stats["sessions"] == 0
        assert len(await store.read_active("cap-1", "demo.operator")) == 1


class TestLifecycle:
    async def test_start_and_stop(self, store):
        sweeper = CaptureSweeper(store, interval=60)
        assert not sweeper.running
        sweeper.start()
        assert sweeper.running
        sweeper.start()
        await sweeper.stop()
        assert not sweeper.running
        await sweeper.stop()

    async def test_context_manager(self, store):
        async with CaptureSweeper(store, interval=60) as sweeper:
            assert sweeper.running
        assert not sweeper.running

    async def test_periodic_pass_survives_errors(self, store, monkeypatch):
        calls = []

        async def flaky(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise ConnectionError("database went away")
            return {"sessions": 0, "records": 0}

        monkeypatch.setattr(store, "sweep", flaky)
        sweeper = CaptureSweeper(store, interval=0)
        sweeper.start()
        for _ in range(20):
            await asyncio.sleep(0)
            if len(calls) >= 2:
                break
        await sweeper.stop()
        assert len(calls) >= 2
