import logging
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import List, Optional, Sequence, Set
from uuid import uuid4
import asyncpg
from ..models.db_models import AttendanceRecord, FaceProfile

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class StorageConflict(Exception):
    """Benzersizlik kısıtı ihlali. Defter (ledger) bunu güncellemeye çevirir, dışarı sızmaz."""
    code = "STORAGE_CONFLICT"


class StorageUnavailable(Exception):
    """Benzersizlik ihlali dışındaki tüm depolama hataları. Çağırana olduğu gibi iletilir."""
    code = "STORAGE_UNAVAILABLE"


@contextmanager
def _storage_errors(operation: str):
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise StorageConflict(f"{operation}: {e}") from e
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.error(f"Storage error during {operation}: {e}", exc_info=True)
        raise StorageUnavailable(f"{operation}: {e}") from e


class AsyncPostgresClient:
    """
    Tüm veritabanı operasyonlarını yöneten PostgreSQL istemcisi.
    """
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def init_schema(self):
        """schema.sql dosyasındaki tabloları (yoksa) oluşturur."""
        async with self._pool.acquire() as connection:
            await connection.execute(SCHEMA_PATH.read_text(encoding="utf-8"))

    # ===== Attendance =====

    async def insert_attendance_record(self, record: AttendanceRecord):
        """Yeni bir yoklama kaydı ekler. Aynı anahtar varsa StorageConflict fırlatır."""
        query = """
            INSERT INTO attendance (student_id, class_id, session_date, timestamp, status)
            VALUES ($1, $2, $3, $4, $5);
        """
        with _storage_errors("insert_attendance_record"):
            async with self._pool.acquire() as connection:
                await connection.execute(
                    query, record.student_id, record.class_id, record.session_date,
                    record.timestamp, record.status.value
                )

    async def insert_attendance_records(self, records: Sequence[AttendanceRecord]):
        """
        Toplu ekleme. Tek bir transaction içinde çalışır: bir satır çakışırsa
        hiçbir satır yazılmaz ve StorageConflict fırlatılır.
        """
        if not records:
            return
        query = """
            INSERT INTO attendance (student_id, class_id, session_date, timestamp, status)
            VALUES ($1, $2, $3, $4, $5);
        """
        record_data = [(
            rec.student_id, rec.class_id, rec.session_date, rec.timestamp, rec.status.value
        ) for rec in records]
        with _storage_errors("insert_attendance_records"):
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    await connection.executemany(query, record_data)

    async def get_attendance_record(self, student_id: str, class_id: str, session_date: date) -> Optional[AttendanceRecord]:
        query = """
            SELECT student_id, class_id, session_date, timestamp, status FROM attendance
            WHERE student_id = $1 AND class_id = $2 AND session_date = $3;
        """
        with _storage_errors("get_attendance_record"):
            async with self._pool.acquire() as connection:
                record = await connection.fetchrow(query, student_id, class_id, session_date)
                return AttendanceRecord(**record) if record else None

    async def update_attendance_record(self, record: AttendanceRecord) -> int:
        """Mevcut kaydın durumunu ve zamanını üzerine yazar. Etkilenen satır sayısını döndürür."""
        query = """
            UPDATE attendance
            SET status = $4, timestamp = $5
            WHERE student_id = $1 AND class_id = $2 AND session_date = $3;
        """
        with _storage_errors("update_attendance_record"):
            async with self._pool.acquire() as connection:
                result = await connection.execute(
                    query, record.student_id, record.class_id, record.session_date,
                    record.status.value, record.timestamp
                )
        return int(str(result).split()[-1])

    async def get_recorded_student_ids(self, class_id: str, session_date: date) -> Set[str]:
        query = "SELECT student_id FROM attendance WHERE class_id = $1 AND session_date = $2;"
        with _storage_errors("get_recorded_student_ids"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(query, class_id, session_date)
                return {row["student_id"] for row in rows}

    # ===== Enrollments =====

    async def get_enrolled_student_ids(self, class_id: str) -> Set[str]:
        query = "SELECT student_id FROM enrollments WHERE class_id = $1;"
        with _storage_errors("get_enrolled_student_ids"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(query, class_id)
                return {row["student_id"] for row in rows}

    async def is_student_enrolled(self, student_id: str, class_id: str) -> bool:
        query = "SELECT 1 FROM enrollments WHERE student_id = $1 AND class_id = $2;"
        with _storage_errors("is_student_enrolled"):
            async with self._pool.acquire() as connection:
                return await connection.fetchval(query, student_id, class_id) is not None

    # ===== Face Profiles =====

    async def get_face_profile(self, owner_id: str) -> Optional[FaceProfile]:
        """Kullanıcının yüz profilini, embedding'leri kayıt sırasıyla getirir."""
        query = """
            SELECT p.profile_id, p.owner_id, e.embedding
            FROM face_profiles p
            LEFT JOIN face_profile_embeddings e ON e.profile_id = p.profile_id
            WHERE p.owner_id = $1
            ORDER BY e.position;
        """
        with _storage_errors("get_face_profile"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(query, owner_id)
        if not rows:
            return None
        embeddings = [list(row["embedding"]) for row in rows if row["embedding"] is not None]
        return FaceProfile(profile_id=rows[0]["profile_id"], owner_id=owner_id, embeddings=embeddings)

    async def replace_face_profile(self, owner_id: str, embeddings: List[List[float]]) -> FaceProfile:
        """
        Yeniden kayıt: mevcut profili ve embedding'leri siler, yenisini oluşturur.
        Hepsi tek bir transaction içinde yapılır; aynı sahip için eşzamanlı
        değiştirmeler advisory lock ile sıraya girer.
        """
        profile_id = uuid4()
        with _storage_errors("replace_face_profile"):
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    await connection.execute("SELECT pg_advisory_xact_lock(hashtext($1));", owner_id)
                    await connection.execute("DELETE FROM face_profiles WHERE owner_id = $1;", owner_id)
                    await connection.execute(
                        "INSERT INTO face_profiles (profile_id, owner_id) VALUES ($1, $2);",
                        profile_id, owner_id
                    )
                    await connection.executemany(
                        "INSERT INTO face_profile_embeddings (profile_id, position, embedding) VALUES ($1, $2, $3);",
                        [(profile_id, position, embedding) for position, embedding in enumerate(embeddings)]
                    )
        return FaceProfile(profile_id=profile_id, owner_id=owner_id, embeddings=embeddings)

    async def append_face_embeddings(self, owner_id: str, embeddings: List[List[float]]) -> Optional[FaceProfile]:
        """Mevcut profile yeni embedding'ler ekler. Profil yoksa None döner."""
        with _storage_errors("append_face_embeddings"):
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(
                        "SELECT profile_id FROM face_profiles WHERE owner_id = $1 FOR UPDATE;", owner_id
                    )
                    if row is None:
                        return None
                    next_position = await connection.fetchval(
                        "SELECT COALESCE(MAX(position) + 1, 0) FROM face_profile_embeddings WHERE profile_id = $1;",
                        row["profile_id"]
                    )
                    await connection.executemany(
                        "INSERT INTO face_profile_embeddings (profile_id, position, embedding) VALUES ($1, $2, $3);",
                        [(row["profile_id"], next_position + offset, embedding) for offset, embedding in enumerate(embeddings)]
                    )
        return await self.get_face_profile(owner_id)
