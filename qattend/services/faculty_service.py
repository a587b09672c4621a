import logging
from datetime import timedelta
from typing import Iterable, Optional, Tuple

import redis.asyncio as redis

from ..db.redis_client import RedisClient
from ..db.db_client import StorageUnavailable
from ..models.db_models import AttendanceStatus
from ..models.session_models import IssuedToken, QRTokenRecord, Session, SessionKind
from ..tools.token_codec import TokenCodec
from .attendance_ledger import AttendanceLedger, BatchResult
from .errors import InvalidRequest, SessionNotFound, StorageFailure
from .session_store import AUTO_ABSENT_KINDS, SessionStore

logger = logging.getLogger(__name__)


class FacultyService:
    """
    Öğretim üyesiyle ilgili iş mantığı: oturum açma/kapama, QR token üretimi,
    toplu yoklama girişi ve devamsızlık doldurma.
    """
    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        redis_client: RedisClient,
        ledger: AttendanceLedger,
        qr_record_ttl: timedelta = timedelta(minutes=60),
    ):
        self.store = store
        self.codec = codec
        self.redis_client = redis_client
        self.ledger = ledger
        self.qr_record_ttl = qr_record_ttl

    async def open_session(self, class_id: str, kind: SessionKind) -> Tuple[Session, Optional[IssuedToken]]:
        """Yeni bir oturum açar; QR ve hybrid oturumlar için token üretip Redis'e kaydeder."""
        if not class_id or "_" in class_id or ":" in class_id:
            raise InvalidRequest("class_id cannot be empty or contain '_' or ':'")

        session = self.store.open(class_id, kind)
        if kind not in AUTO_ABSENT_KINDS:
            return session, None

        issued = self.codec.encode(session)
        record = QRTokenRecord(
            token=issued.token,
            class_id=issued.class_id,
            session_id=issued.session_id,
            session_timestamp=issued.session_timestamp,
            qr_expiration=issued.expires_at,
        )
        try:
            await self.redis_client.save_qr_token(record, ttl=int(self.qr_record_ttl.total_seconds()))
        except redis.RedisError as e:
            logger.error(f"Error saving QR token for session {session.session_id} to Redis.", exc_info=True)
            self.store.end(session.session_id)
            raise StorageFailure("A server error occurred while starting the session.") from e

        logger.info(f"QR token issued for session {session.session_id}, expires at {issued.expires_at.isoformat()}.")
        return session, issued

    def end_session(self, session_id: str) -> None:
        self._require_session(session_id)
        self.store.end(session_id)

    def get_active_session(self, class_id: str, kind: Optional[SessionKind] = None) -> Optional[Session]:
        return self.store.get_active(class_id, kind)

    def _require_session(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound("Session not found.")
        return session

    async def mark_attendance(self, session_id: str, entries: Iterable[Tuple[str, AttendanceStatus]]) -> BatchResult:
        """Manuel toplu yoklama girişi. Aynı öğrencinin ikinci kaydı güncelleme olarak işlenir."""
        session = self._require_session(session_id)
        entries = list(entries)
        try:
            result = await self.ledger.record_batch(
                entries,
                class_id=session.class_id,
                session_date=session.created_at.date(),
                timestamp=session.created_at,
            )
        except StorageUnavailable as e:
            raise StorageFailure("A server error occurred while saving attendance.") from e

        failed = set(result.failed)
        for student_id, _ in entries:
            if student_id not in failed:
                self.store.mark_recorded(session_id, student_id)
        return result

    async def backfill_absences(self, session_id: str) -> BatchResult:
        session = self._require_session(session_id)
        return await backfill_session_absences(self.ledger, session)


async def backfill_session_absences(ledger: AttendanceLedger, session: Session) -> BatchResult:
    """Oturumun sınıfı için o gün kaydı olmayan kayıtlı öğrencileri 'absent' olarak işler."""
    try:
        return await ledger.backfill_absences(
            session.class_id,
            session.created_at.date(),
            session.created_at,
        )
    except StorageUnavailable as e:
        logger.error(f"Absence back-fill failed for session {session.session_id}.", exc_info=True)
        raise StorageFailure("A server error occurred while back-filling absences.") from e
