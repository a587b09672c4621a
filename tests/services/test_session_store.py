import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from qattend.models.session_models import SessionKind
from qattend.services.session_store import SessionStore, auto_absent_job_id


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def scheduler():
    return MagicMock()

@pytest.fixture
def store(scheduler, clock):
    return SessionStore(scheduler=scheduler, on_expire=AsyncMock(), clock=clock)


class TestOpenAndLookup:

    def test_open_creates_active_session(self, store, clock):
        session = store.open("CS101", SessionKind.QR)

        assert session.active is True
        assert session.created_at == clock.now
        assert "_" not in session.session_id
        assert store.get(session.session_id) == session

    def test_open_never_closes_other_sessions(self, store):
        first = store.open("CS101", SessionKind.QR)
        second = store.open("CS101", SessionKind.MANUAL)

        assert store.get(first.session_id).active is True
        assert store.get(second.session_id).active is True

    def test_get_active_filters_by_kind(self, store):
        store.open("CS101", SessionKind.MANUAL)
        qr = store.open("CS101", SessionKind.QR)

        assert store.get_active("CS101", SessionKind.QR).session_id == qr.session_id
        assert store.get_active("MATH200") is None

    def test_get_active_at_matches_creation_instant(self, store, clock):
        morning = store.open("CS101", SessionKind.HYBRID)
        clock.advance(hours=2)
        afternoon = store.open("CS101", SessionKind.HYBRID)

        assert store.get_active_at("CS101", afternoon.created_at + timedelta(microseconds=400)).session_id == afternoon.session_id
        assert store.get_active_at("CS101", morning.created_at).session_id == morning.session_id
        assert store.get_active_at("CS101", morning.created_at + timedelta(minutes=1)) is None

        store.end(afternoon.session_id)
        assert store.get_active_at("CS101", afternoon.created_at) is None

    def test_qr_and_hybrid_sessions_schedule_auto_absence(self, store, scheduler, clock):
        session = store.open("CS101", SessionKind.QR)
        store.open("CS101", SessionKind.HYBRID)
        store.open("CS101", SessionKind.MANUAL)

        assert scheduler.add_job.call_count == 2
        _, kwargs = scheduler.add_job.call_args_list[0]
        assert kwargs["id"] == auto_absent_job_id(session.session_id)
        assert kwargs["run_date"] == clock.now + timedelta(minutes=5)


class TestEnd:

    def test_end_marks_inactive_and_cancels_job(self, store, scheduler):
        session = store.open("CS101", SessionKind.QR)

        assert store.end(session.session_id) is True

        assert store.get(session.session_id).active is False
        assert store.get_active("CS101") is None
        scheduler.remove_job.assert_called_once_with(auto_absent_job_id(session.session_id))

    def test_end_is_idempotent(self, store, caplog):
        session = store.open("CS101", SessionKind.QR)
        store.end(session.session_id)

        with caplog.at_level(logging.WARNING):
            assert store.end(session.session_id) is False
            assert store.end("does-not-exist") is False
        assert "unknown or inactive" in caplog.text

    def test_missing_job_is_ignored(self, store, scheduler):
        scheduler.remove_job.side_effect = JobLookupError("x")
        session = store.open("CS101", SessionKind.MANUAL)
        assert store.end(session.session_id) is True

    def test_end_all(self, store):
        store.open("CS101", SessionKind.QR)
        store.open("MATH200", SessionKind.MANUAL)

        assert store.end_all() == 2
        assert store.get_active("CS101") is None
        assert store.get_active("MATH200") is None


class TestSweepAndRecording:

    def test_sweep_removes_only_old_sessions(self, store, clock):
        old = store.open("CS101", SessionKind.QR)
        clock.advance(minutes=45)
        fresh = store.open("CS101", SessionKind.QR)
        clock.advance(minutes=20)

        assert store.sweep_expired(60) == 1
        assert store.get(old.session_id) is None
        assert store.get(fresh.session_id) is not None

    def test_mark_recorded(self, store):
        session = store.open("CS101", SessionKind.QR)

        assert store.is_recorded(session.session_id, "S001") is False
        store.mark_recorded(session.session_id, "S001")
        assert store.is_recorded(session.session_id, "S001") is True


@pytest.mark.asyncio
class TestExpiry:

    async def test_expire_job_deactivates_and_runs_callback(self, store):
        session = store.open("CS101", SessionKind.QR)

        await store._expire(session.session_id)

        assert store.get(session.session_id).active is False
        store._on_expire.assert_awaited_once()
        assert store._on_expire.await_args.args[0].session_id == session.session_id

    async def test_expire_after_end_does_nothing(self, store):
        session = store.open("CS101", SessionKind.QR)
        store.end(session.session_id)

        await store._expire(session.session_id)
        store._on_expire.assert_not_awaited()

    async def test_callback_failure_is_logged_not_raised(self, store, caplog):
        store._on_expire.side_effect = RuntimeError("db down")
        session = store.open("CS101", SessionKind.QR)

        await store._expire(session.session_id)
        assert "Auto-absence failed" in caplog.text

    async def test_real_scheduler_fires_auto_absence(self):
        fired = asyncio.Event()
        expired = []

        async def on_expire(session):
            expired.append(session)
            fired.set()

        scheduler = AsyncIOScheduler()
        scheduler.start()
        try:
            store = SessionStore(scheduler=scheduler, on_expire=on_expire, auto_absent_delay=timedelta(milliseconds=100))
            session = store.open("CS101", SessionKind.QR)

            await asyncio.wait_for(fired.wait(), timeout=5)

            assert expired[0].session_id == session.session_id
            assert store.get(session.session_id).active is False
        finally:
            scheduler.shutdown(wait=False)

    async def test_ended_session_job_never_fires(self):
        on_expire = AsyncMock()
        scheduler = AsyncIOScheduler()
        scheduler.start()
        try:
            store = SessionStore(scheduler=scheduler, on_expire=on_expire, auto_absent_delay=timedelta(milliseconds=100))
            session = store.open("CS101", SessionKind.QR)
            store.end(session.session_id)

            await asyncio.sleep(0.3)
            on_expire.assert_not_awaited()
        finally:
            scheduler.shutdown(wait=False)
