import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence

import numpy as np
import redis.asyncio as redis

from ..db.redis_client import RedisClient
from ..db.db_client import AsyncPostgresClient, StorageConflict, StorageUnavailable
from ..models.db_models import AttendanceStatus, FaceProfile, User
from ..models.face_models import VerificationAttempt
from ..tools.embedding_pipeline import CaptureFailed, EmbeddingPipeline, InferenceFailed
from ..tools.face_matcher import (
    EmbeddingDimensionMismatch, FaceMatcher, InvalidEmbedding, validate_embedding
)
from ..tools.model_loader import ModelNotReady
from ..tools.token_codec import TokenCodec, split_face_verification_class_id
from .attendance_ledger import AttendanceLedger, RecordOutcome
from .errors import (
    FaceMismatch, InvalidRequest, NoFaceProfile, NotEnrolled, RateLimited,
    StorageFailure, TokenExpired, TokenMalformed, VerificationUnavailable
)
from .rate_limiter import RateLimiter
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # Saat dilimi olmayan zaman UTC kabul edilir.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class QRRedemption:
    success: bool
    message: str
    already_marked: bool
    class_id: str
    session_date: date


@dataclass
class FaceVerification:
    success: bool
    message: str
    similarity: float
    threshold: float
    confidence: str
    session_timestamp: datetime
    already_marked: bool = False


class StudentService:
    """
    Öğrenciyle ilgili tüm iş mantığını yürüten servis katmanı: QR ile yoklama
    ve yüz doğrulamalı yoklama, yüz profili kaydı.
    """
    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        redis_client: RedisClient,
        db_client: AsyncPostgresClient,
        ledger: AttendanceLedger,
        matcher: FaceMatcher,
        rate_limiter: RateLimiter,
        pipeline: Optional[EmbeddingPipeline] = None,
        embedding_size: Optional[int] = None,
        max_attempts: int = 5,
        window_minutes: float = 10,
    ):
        self.store = store
        self.codec = codec
        self.redis_client = redis_client
        self.db_client = db_client
        self.ledger = ledger
        self.matcher = matcher
        self.rate_limiter = rate_limiter
        self.pipeline = pipeline
        self.embedding_size = embedding_size
        self.max_attempts = max_attempts
        self.window_minutes = window_minutes

    # ===== QR =====

    async def redeem_qr_token(self, student: User, token: str) -> QRRedemption:
        """
        Öğrencinin okuttuğu QR token'ını doğrular ve yoklamayı işler.
        Sıra: yapısal çözme -> kayıtlı token -> süre -> oturum durumu -> ders kaydı -> yazım.
        """
        decoded = self.codec.decode(token)
        if decoded is None:
            logger.warning(f"Student '{student.user_id}' submitted a malformed QR token.")
            raise TokenMalformed("Invalid QR code")

        try:
            record = await self.redis_client.get_qr_token(token)
        except redis.RedisError as e:
            logger.error("Redis error while looking up QR token.", exc_info=True)
            raise StorageFailure("A server error occurred while verifying the QR code.") from e

        if record is None or record.class_id != decoded.class_id:
            raise TokenMalformed("Invalid QR code")

        if self.codec.is_expired(record.qr_expiration):
            logger.info(f"Student '{student.user_id}' scanned an expired QR code for class {record.class_id}.")
            raise TokenExpired("QR code has expired")

        session = self.store.get(record.session_id)
        if session is not None and not session.active:
            raise TokenExpired("QR code has expired")

        session_date = record.session_timestamp.date()
        try:
            if not await self.db_client.is_student_enrolled(student.user_id, record.class_id):
                raise NotEnrolled("You are not enrolled in this class")

            outcome = await self.ledger.record(
                student.user_id,
                record.class_id,
                session_date,
                record.session_timestamp,
                AttendanceStatus.PRESENT,
            )
        except StorageUnavailable as e:
            raise StorageFailure("A server error occurred while marking attendance.") from e

        self.store.mark_recorded(record.session_id, student.user_id)

        if outcome == RecordOutcome.ALREADY_PRESENT:
            return QRRedemption(
                success=True,
                message="Attendance already marked for today",
                already_marked=True,
                class_id=record.class_id,
                session_date=session_date,
            )
        return QRRedemption(
            success=True,
            message="Attendance marked successfully",
            already_marked=False,
            class_id=record.class_id,
            session_date=session_date,
        )

    # ===== Face =====

    async def verify_face_attendance(
        self,
        student: User,
        class_id: str,
        embedding: Sequence[float],
        session_timestamp: Optional[datetime] = None,
        quality: Optional[float] = None,
    ) -> FaceVerification:
        """İstemcinin ürettiği embedding ile yüz doğrulamalı yoklama."""
        await self._check_rate_limit(student)
        return await self._verify(student, class_id, embedding, session_timestamp, quality)

    async def verify_face_image(
        self,
        student: User,
        class_id: str,
        image: bytes,
        session_timestamp: Optional[datetime] = None,
    ) -> FaceVerification:
        """Yüklenen görüntüden sunucu tarafında embedding çıkarır, sonra aynı akışı izler."""
        await self._check_rate_limit(student)
        if self.pipeline is None:
            raise VerificationUnavailable("Face verification is temporarily unavailable. Please try again later.")

        try:
            result = await self.pipeline.extract(image)
        except CaptureFailed as e:
            raise InvalidRequest(f"Face image could not be processed: {e}", reason=CaptureFailed.code) from e
        except (ModelNotReady, InferenceFailed) as e:
            logger.error(f"Server-side face embedding failed for '{student.user_id}': {e}", exc_info=True)
            raise VerificationUnavailable("Face verification is temporarily unavailable. Please try again later.") from e

        return await self._verify(student, class_id, result.embedding, session_timestamp, result.quality)

    async def _check_rate_limit(self, student: User):
        limit = await self.rate_limiter.check(student.user_id, self.max_attempts, self.window_minutes)
        if not limit.allowed:
            raise RateLimited(
                f"Too many verification attempts. Please wait {self.window_minutes} minutes before trying again."
            )

    async def _verify(
        self,
        student: User,
        class_id: str,
        embedding,
        session_timestamp: Optional[datetime],
        quality: Optional[float],
    ) -> FaceVerification:
        if not class_id:
            raise InvalidRequest("class_id is required")

        real_class_id, suffix_timestamp = split_face_verification_class_id(class_id)
        requested_timestamp = suffix_timestamp or session_timestamp
        if requested_timestamp is not None:
            session_timestamp = _as_utc(requested_timestamp)
            session = self.store.get_active_at(real_class_id, session_timestamp)
        else:
            session = self.store.get_active(real_class_id)
            session_timestamp = _as_utc(session.created_at) if session else datetime.now(timezone.utc)

        try:
            live = validate_embedding(embedding, self.embedding_size)
        except InvalidEmbedding as e:
            raise InvalidRequest(str(e)) from e

        try:
            profile = await self.db_client.get_face_profile(student.user_id)
        except StorageUnavailable as e:
            raise StorageFailure("A server error occurred while loading the face profile.") from e
        if profile is None or not profile.embeddings:
            raise NoFaceProfile("No face profile found. Please enroll your face first.")

        try:
            match = self.matcher.decide(live, profile.embeddings)
        except EmbeddingDimensionMismatch as e:
            logger.error(f"Stored face profile of '{student.user_id}' does not match live embedding: {e}")
            raise InvalidRequest("Face embedding does not match the enrolled profile format.") from e

        attempt = VerificationAttempt(
            identity=student.user_id,
            embedding=live.tolist(),
            quality=quality,
            decision="accepted" if match.accepted else "rejected",
            similarity=match.similarity,
            timestamp=datetime.now(timezone.utc),
        )
        logger.info(f"Face verification attempt: {attempt!r}")

        if not match.accepted:
            raise FaceMismatch(
                "FACE VERIFICATION FAILED: You are not authorized for this account",
                similarity=match.similarity,
                threshold=match.threshold,
                message=f"Face similarity {match.similarity * 100:.1f}% is below required {match.threshold * 100:.1f}%",
            )

        try:
            outcome = await self.ledger.record(
                student.user_id,
                real_class_id,
                session_timestamp.date(),
                session_timestamp,
                AttendanceStatus.PRESENT,
            )
        except StorageUnavailable as e:
            raise StorageFailure("Failed to mark attendance") from e

        if session is not None:
            self.store.mark_recorded(session.session_id, student.user_id)

        if outcome == RecordOutcome.ALREADY_PRESENT:
            message = "Attendance already marked for this face verification session"
        else:
            message = f"VERIFIED! Face recognition attendance marked. Similarity: {match.similarity * 100:.1f}%"

        return FaceVerification(
            success=True,
            message=message,
            similarity=match.similarity,
            threshold=match.threshold,
            confidence=match.confidence,
            session_timestamp=session_timestamp,
            already_marked=outcome == RecordOutcome.ALREADY_PRESENT,
        )

    # ===== Face Profile =====

    async def enroll_face_profile(self, student: User, embeddings: List[Sequence[float]], replace: bool = True) -> FaceProfile:
        """
        Yüz profilini kaydeder. replace=True mevcut profili tamamen değiştirir,
        aksi halde yeni embedding'ler mevcut profile eklenir.
        """
        if not embeddings:
            raise InvalidRequest("At least one face embedding is required")

        vectors = []
        for embedding in embeddings:
            try:
                vectors.append(validate_embedding(embedding, self.embedding_size))
            except InvalidEmbedding as e:
                raise InvalidRequest(str(e)) from e

        dimension = vectors[0].size
        if any(v.size != dimension for v in vectors):
            raise InvalidRequest("All embeddings must have the same dimension")

        # Kayıt anında L2-normalize edilir; sonrasında hiç değiştirilmez.
        normalized = [(v / np.linalg.norm(v)).tolist() for v in vectors]

        try:
            try:
                profile = await self._store_face_profile(student.user_id, normalized, replace)
            except StorageConflict:
                # Aynı öğrenci için eşzamanlı bir kayıt araya girdi; bir kez daha denenir.
                logger.warning(f"Concurrent face profile write for '{student.user_id}', retrying once.")
                profile = await self._store_face_profile(student.user_id, normalized, replace)
        except (StorageConflict, StorageUnavailable) as e:
            raise StorageFailure("Failed to store face profile") from e

        logger.info(f"Face profile {profile.profile_id} stored for '{student.user_id}' with {len(profile.embeddings)} embedding(s).")
        return profile

    async def _store_face_profile(self, owner_id: str, embeddings: List[List[float]], replace: bool) -> FaceProfile:
        profile = None
        if not replace:
            profile = await self.db_client.append_face_embeddings(owner_id, embeddings)
        if profile is None:
            profile = await self.db_client.replace_face_profile(owner_id, embeddings)
        return profile
