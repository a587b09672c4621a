import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Iterable, List, Tuple

from ..db.db_client import AsyncPostgresClient, StorageConflict, StorageUnavailable
from ..models.db_models import AttendanceRecord, AttendanceStatus

logger = logging.getLogger(__name__)


class RecordOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    ALREADY_PRESENT = "already_present"
    UNCHANGED = "unchanged"


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated


class AttendanceLedger:
    """
    Yoklama kayıtlarının idempotent yazımı.

    Benzersizlik anahtarı (student_id, class_id, session_date). Aynı anahtar
    için eşzamanlı yazmalarda son yazan kazanır; depolama katmanındaki
    StorageConflict hiçbir zaman dışarı sızmaz, güncellemeye çevrilir.
    """

    def __init__(self, db_client: AsyncPostgresClient):
        self.db_client = db_client

    async def record(
        self,
        student_id: str,
        class_id: str,
        session_date: date,
        timestamp: datetime,
        status: AttendanceStatus,
        downgrade: bool = True,
    ) -> RecordOutcome:
        """
        Tek bir kaydı yazar.

        downgrade=False ise mevcut bir 'present' kaydı 'absent' ile ezilmez
        (otomatik devamsızlık doldurmada kullanılır).
        """
        record = AttendanceRecord(
            student_id=student_id,
            class_id=class_id,
            session_date=session_date,
            timestamp=timestamp,
            status=status,
        )
        try:
            await self.db_client.insert_attendance_record(record)
            logger.info(f"Attendance inserted: student={student_id} class={class_id} date={session_date} status={status.value}")
            return RecordOutcome.INSERTED
        except StorageConflict:
            pass

        existing = await self.db_client.get_attendance_record(student_id, class_id, session_date)
        if existing is not None:
            if existing.status == AttendanceStatus.PRESENT and status == AttendanceStatus.PRESENT:
                logger.info(f"Student {student_id} already marked present for class {class_id} on {session_date}.")
                return RecordOutcome.ALREADY_PRESENT
            if existing.status == AttendanceStatus.PRESENT and not downgrade:
                return RecordOutcome.UNCHANGED

        updated_rows = await self.db_client.update_attendance_record(record)
        if updated_rows == 0:
            # Çakışan satır bu arada silinmiş; bir kez daha eklemeyi dene.
            try:
                await self.db_client.insert_attendance_record(record)
                return RecordOutcome.INSERTED
            except StorageConflict:
                await self.db_client.update_attendance_record(record)

        logger.info(f"Attendance updated: student={student_id} class={class_id} date={session_date} status={status.value}")
        return RecordOutcome.UPDATED

    async def record_batch(
        self,
        entries: Iterable[Tuple[str, AttendanceStatus]],
        class_id: str,
        session_date: date,
        timestamp: datetime,
        downgrade: bool = True,
    ) -> BatchResult:
        """
        Önce tek transaction'lık toplu ekleme denenir. Başarısız olursa kayıtlar
        tek tek yazılır; böylece çakışan bir satır diğerlerini engellemez.
        """
        entries = list(entries)
        result = BatchResult()
        if not entries:
            return result

        records = [
            AttendanceRecord(
                student_id=student_id,
                class_id=class_id,
                session_date=session_date,
                timestamp=timestamp,
                status=status,
            )
            for student_id, status in entries
        ]
        try:
            await self.db_client.insert_attendance_records(records)
            result.inserted = len(records)
            logger.info(f"Bulk inserted {len(records)} attendance record(s) for class {class_id} on {session_date}.")
            return result
        except (StorageConflict, StorageUnavailable) as e:
            logger.warning(f"Bulk insert failed for class {class_id}, falling back to per-record writes: {e}")

        for rec in records:
            try:
                outcome = await self.record(
                    rec.student_id, class_id, session_date, timestamp, rec.status, downgrade=downgrade
                )
            except StorageUnavailable as e:
                logger.error(f"Failed to record attendance for student {rec.student_id}: {e}")
                result.failed.append(rec.student_id)
                continue

            if outcome == RecordOutcome.INSERTED:
                result.inserted += 1
            elif outcome == RecordOutcome.UPDATED:
                result.updated += 1
            else:
                result.unchanged += 1
        return result

    async def backfill_absences(self, class_id: str, session_date: date, timestamp: datetime) -> BatchResult:
        """
        Kayıtlı olup o gün için henüz kaydı olmayan öğrencileri 'absent' olarak işler.
        Mevcut bir 'present' kaydı asla 'absent'e düşürülmez.
        """
        enrolled = await self.db_client.get_enrolled_student_ids(class_id)
        recorded = await self.db_client.get_recorded_student_ids(class_id, session_date)
        missing = sorted(enrolled - recorded)

        if not missing:
            logger.info(f"No absences to back-fill for class {class_id} on {session_date}.")
            return BatchResult()

        result = await self.record_batch(
            [(student_id, AttendanceStatus.ABSENT) for student_id in missing],
            class_id,
            session_date,
            timestamp,
            downgrade=False,
        )
        logger.info(f"Back-filled {result.written} absence(s) for class {class_id} on {session_date}.")
        return result
