# tests/conftest.py
import asyncio
import sys
from datetime import date
from typing import Dict, List, Optional, Set, Tuple
from uuid import uuid4

import pytest

from qattend.db.db_client import StorageConflict, StorageUnavailable
from qattend.models.db_models import AttendanceRecord, FaceProfile

# This is the crucial fix for Windows asyncio issues with pytest.
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakePostgresClient:
    """
    AsyncPostgresClient'ın bellek içi karşılığı. (student_id, class_id, session_date)
    benzersizlik kısıtını gerçek tablo gibi uygular ve her yazmadan önce event
    loop'a kontrolü bırakır; böylece eşzamanlı yazmalar iç içe geçer.
    """

    def __init__(self):
        self.rows: Dict[Tuple[str, str, date], AttendanceRecord] = {}
        self.enrollments: Dict[str, Set[str]] = {}
        self.profiles: Dict[str, FaceProfile] = {}
        self.write_log: List[AttendanceRecord] = []
        self.unavailable_for: Set[str] = set()
        self.bulk_calls = 0

    @staticmethod
    def _key(record: AttendanceRecord):
        return (record.student_id, record.class_id, record.session_date)

    def _check_available(self, student_id: str):
        if student_id in self.unavailable_for:
            raise StorageUnavailable(f"storage offline for {student_id}")

    async def insert_attendance_record(self, record: AttendanceRecord):
        self._check_available(record.student_id)
        await asyncio.sleep(0)
        if self._key(record) in self.rows:
            raise StorageConflict("duplicate key value violates unique constraint")
        self.rows[self._key(record)] = record
        self.write_log.append(record)

    async def insert_attendance_records(self, records):
        self.bulk_calls += 1
        await asyncio.sleep(0)
        keys = [self._key(r) for r in records]
        if len(set(keys)) != len(keys) or any(k in self.rows for k in keys):
            raise StorageConflict("duplicate key value violates unique constraint")
        for record in records:
            self._check_available(record.student_id)
        for record in records:
            self.rows[self._key(record)] = record
            self.write_log.append(record)

    async def get_attendance_record(self, student_id, class_id, session_date) -> Optional[AttendanceRecord]:
        self._check_available(student_id)
        return self.rows.get((student_id, class_id, session_date))

    async def update_attendance_record(self, record: AttendanceRecord) -> int:
        self._check_available(record.student_id)
        await asyncio.sleep(0)
        if self._key(record) not in self.rows:
            return 0
        self.rows[self._key(record)] = record
        self.write_log.append(record)
        return 1

    async def get_recorded_student_ids(self, class_id, session_date) -> Set[str]:
        return {s for (s, c, d) in self.rows if c == class_id and d == session_date}

    async def get_enrolled_student_ids(self, class_id) -> Set[str]:
        return set(self.enrollments.get(class_id, set()))

    async def is_student_enrolled(self, student_id, class_id) -> bool:
        return student_id in self.enrollments.get(class_id, set())

    async def get_face_profile(self, owner_id) -> Optional[FaceProfile]:
        return self.profiles.get(owner_id)

    async def replace_face_profile(self, owner_id, embeddings) -> FaceProfile:
        profile = FaceProfile(profile_id=uuid4(), owner_id=owner_id, embeddings=list(embeddings))
        self.profiles[owner_id] = profile
        return profile

    async def append_face_embeddings(self, owner_id, embeddings) -> Optional[FaceProfile]:
        profile = self.profiles.get(owner_id)
        if profile is None:
            return None
        profile = profile.model_copy(update={"embeddings": profile.embeddings + list(embeddings)})
        self.profiles[owner_id] = profile
        return profile


@pytest.fixture
def fake_db() -> FakePostgresClient:
    return FakePostgresClient()
