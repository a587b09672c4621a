import asyncio
from datetime import date, datetime, timezone

import pytest

from qattend.db.db_client import StorageUnavailable
from qattend.models.db_models import AttendanceStatus
from qattend.services.attendance_ledger import AttendanceLedger, RecordOutcome

SESSION_DATE = date(2026, 3, 2)
NOW = datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc)

PRESENT = AttendanceStatus.PRESENT
ABSENT = AttendanceStatus.ABSENT


@pytest.fixture
def ledger(fake_db) -> AttendanceLedger:
    return AttendanceLedger(fake_db)


@pytest.mark.asyncio
class TestRecord:

    async def test_first_write_inserts(self, ledger, fake_db):
        outcome = await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)

        assert outcome == RecordOutcome.INSERTED
        assert fake_db.rows[("S001", "CS101", SESSION_DATE)].status == PRESENT

    async def test_present_twice_is_already_present(self, ledger, fake_db):
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)
        outcome = await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)

        assert outcome == RecordOutcome.ALREADY_PRESENT
        assert len(fake_db.rows) == 1
        assert len(fake_db.write_log) == 1

    async def test_second_write_updates_status(self, ledger, fake_db):
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, ABSENT)
        outcome = await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)

        assert outcome == RecordOutcome.UPDATED
        assert fake_db.rows[("S001", "CS101", SESSION_DATE)].status == PRESENT

    async def test_last_write_wins_for_present_then_absent(self, ledger, fake_db):
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, ABSENT)

        assert fake_db.rows[("S001", "CS101", SESSION_DATE)].status == ABSENT

    async def test_absence_does_not_downgrade_when_disabled(self, ledger, fake_db):
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)
        outcome = await ledger.record("S001", "CS101", SESSION_DATE, NOW, ABSENT, downgrade=False)

        assert outcome == RecordOutcome.UNCHANGED
        assert fake_db.rows[("S001", "CS101", SESSION_DATE)].status == PRESENT

    async def test_different_days_are_different_rows(self, ledger, fake_db):
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)
        await ledger.record("S001", "CS101", date(2026, 3, 3), NOW, PRESENT)
        assert len(fake_db.rows) == 2

    async def test_concurrent_writes_leave_one_row_with_last_writer_status(self, ledger, fake_db):
        statuses = [PRESENT, ABSENT, PRESENT, ABSENT, ABSENT, PRESENT, ABSENT, PRESENT]

        outcomes = await asyncio.gather(*(
            ledger.record("S001", "CS101", SESSION_DATE, NOW, status) for status in statuses
        ))

        assert len(fake_db.rows) == 1
        assert outcomes.count(RecordOutcome.INSERTED) == 1
        final = fake_db.rows[("S001", "CS101", SESSION_DATE)]
        assert final.status == fake_db.write_log[-1].status

    async def test_storage_unavailable_propagates(self, ledger, fake_db):
        fake_db.unavailable_for.add("S001")
        with pytest.raises(StorageUnavailable):
            await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)


@pytest.mark.asyncio
class TestRecordBatch:

    async def test_bulk_insert(self, ledger, fake_db):
        result = await ledger.record_batch(
            [("S001", PRESENT), ("S002", ABSENT)], "CS101", SESSION_DATE, NOW
        )

        assert result.inserted == 2
        assert fake_db.bulk_calls == 1
        assert len(fake_db.rows) == 2

    async def test_conflict_falls_back_to_per_record(self, ledger, fake_db):
        await ledger.record("S002", "CS101", SESSION_DATE, NOW, ABSENT)

        result = await ledger.record_batch(
            [("S001", PRESENT), ("S002", PRESENT), ("S003", ABSENT)], "CS101", SESSION_DATE, NOW
        )

        assert result.inserted == 2
        assert result.updated == 1
        assert result.failed == []
        assert fake_db.rows[("S002", "CS101", SESSION_DATE)].status == PRESENT

    async def test_per_record_failures_are_collected(self, ledger, fake_db):
        fake_db.unavailable_for.add("S002")

        result = await ledger.record_batch(
            [("S001", PRESENT), ("S002", PRESENT), ("S003", PRESENT)], "CS101", SESSION_DATE, NOW
        )

        assert result.failed == ["S002"]
        assert result.inserted == 2

    async def test_empty_batch(self, ledger, fake_db):
        result = await ledger.record_batch([], "CS101", SESSION_DATE, NOW)
        assert result.written == 0
        assert fake_db.bulk_calls == 0


@pytest.mark.asyncio
class TestBackfillAbsences:

    async def test_backfill_marks_only_unrecorded_students(self, ledger, fake_db):
        fake_db.enrollments["CS101"] = {"S001", "S002", "S003"}
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)

        result = await ledger.backfill_absences("CS101", SESSION_DATE, NOW)

        assert result.inserted == 2
        assert fake_db.rows[("S001", "CS101", SESSION_DATE)].status == PRESENT
        assert fake_db.rows[("S002", "CS101", SESSION_DATE)].status == ABSENT
        assert fake_db.rows[("S003", "CS101", SESSION_DATE)].status == ABSENT

    async def test_backfill_with_nothing_missing(self, ledger, fake_db):
        fake_db.enrollments["CS101"] = {"S001"}
        await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)

        result = await ledger.backfill_absences("CS101", SESSION_DATE, NOW)
        assert result.written == 0

    async def test_backfill_never_downgrades_a_racing_present(self, ledger, fake_db):
        """Devamsızlık doldurulurken aynı anda okutulan bir 'present' ezilmez."""
        fake_db.enrollments["CS101"] = {"S001", "S002"}

        original_recorded = fake_db.get_recorded_student_ids

        async def recorded_then_student_scans(class_id, session_date):
            recorded = await original_recorded(class_id, session_date)
            await ledger.record("S001", "CS101", SESSION_DATE, NOW, PRESENT)
            return recorded

        fake_db.get_recorded_student_ids = recorded_then_student_scans

        result = await ledger.backfill_absences("CS101", SESSION_DATE, NOW)

        assert fake_db.rows[("S001", "CS101", SESSION_DATE)].status == PRESENT
        assert fake_db.rows[("S002", "CS101", SESSION_DATE)].status == ABSENT
        assert result.unchanged == 1
