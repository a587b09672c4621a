import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from qattend.db.db_client import StorageUnavailable
from qattend.models.db_models import AttendanceStatus
from qattend.models.session_models import SessionKind
from qattend.services.attendance_ledger import AttendanceLedger
from qattend.services.errors import StorageFailure
from qattend.services.session_store import SessionStore
from qattend.tasks.cron import make_auto_absent_callback, sweep_sessions_task

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestSweepSessionsTask:

    async def test_sweep_removes_old_sessions(self):
        clock = MagicMock(return_value=NOW)
        store = SessionStore(scheduler=MagicMock(), clock=clock)
        old = store.open("CS101", SessionKind.QR)
        clock.return_value = NOW + timedelta(minutes=61)

        await sweep_sessions_task(store, max_age_minutes=60)

        assert store.get(old.session_id) is None

    async def test_sweep_errors_are_logged(self, caplog):
        """Görev hata fırlatmamalı; zamanlayıcı bir sonraki çalışmaya devam eder."""
        store = MagicMock()
        store.sweep_expired.side_effect = RuntimeError("boom")

        with caplog.at_level(logging.ERROR):
            await sweep_sessions_task(store, max_age_minutes=60)

        assert "Session sweep failed" in caplog.text


@pytest.mark.asyncio
class TestAutoAbsentCallback:

    async def test_callback_backfills_unrecorded_students(self, fake_db):
        fake_db.enrollments["CS101"] = {"S001", "S002"}
        ledger = AttendanceLedger(fake_db)
        store = SessionStore(scheduler=MagicMock())
        session = store.open("CS101", SessionKind.QR)
        session_date = session.created_at.date()
        await ledger.record("S001", "CS101", session_date, NOW, AttendanceStatus.PRESENT)

        callback = make_auto_absent_callback(ledger)
        await callback(session)

        assert fake_db.rows[("S001", "CS101", session_date)].status == AttendanceStatus.PRESENT
        assert fake_db.rows[("S002", "CS101", session_date)].status == AttendanceStatus.ABSENT

    async def test_callback_warns_about_failed_students(self, fake_db, caplog):
        fake_db.enrollments["CS101"] = {"S001", "S002"}
        fake_db.unavailable_for.add("S002")
        store = SessionStore(scheduler=MagicMock())
        session = store.open("CS101", SessionKind.QR)

        callback = make_auto_absent_callback(AttendanceLedger(fake_db))
        with caplog.at_level(logging.WARNING):
            await callback(session)

        assert "could not record 1 student(s)" in caplog.text

    async def test_callback_surfaces_storage_outage(self, fake_db):
        """Kayıt listesi okunamazsa hata yukarı iletilir; SessionStore bunu loglar."""
        async def offline(class_id):
            raise StorageUnavailable("offline")

        fake_db.get_enrolled_student_ids = offline
        session = SessionStore(scheduler=MagicMock()).open("CS101", SessionKind.QR)

        with pytest.raises(StorageFailure):
            await make_auto_absent_callback(AttendanceLedger(fake_db))(session)
