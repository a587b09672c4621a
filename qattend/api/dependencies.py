#qattend/api/dependencies.py
from datetime import timedelta
from fastapi import Request, Depends
import redis.asyncio as redis
import asyncpg

from ..config.config import settings
from ..db.redis_client import RedisClient
from ..db.db_client import AsyncPostgresClient
from ..services.attendance_ledger import AttendanceLedger
from ..services.faculty_service import FacultyService
from ..services.session_store import SessionStore
from ..services.student_service import StudentService
from ..services.rate_limiter import RateLimiter
from ..tools.embedding_pipeline import EmbeddingPipeline
from ..tools.face_matcher import FaceMatcher
from ..tools.token_codec import TokenCodec


def get_redis_pool(request: Request) -> redis.ConnectionPool:
    """
    Uygulamanın state'inden Redis bağlantı havuzunu alır ve bir bağımlılık olarak sağlar.
    """
    return request.app.state.redis_pool

def get_postgres_pool(request: Request) -> asyncpg.Pool:
    """
    Uygulamanın state'inden PostgreSQL bağlantı havuzunu alır ve bir bağımlılık olarak sağlar.
    """
    return request.app.state.postgres_pool

def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store

def get_token_codec(request: Request) -> TokenCodec:
    return request.app.state.token_codec


def get_faculty_service(
    request: Request,
    redis_pool: redis.ConnectionPool = Depends(get_redis_pool),
    postgres_pool: asyncpg.Pool = Depends(get_postgres_pool),
) -> FacultyService:
    """
    Her istek için yeni bir FacultyService nesnesi oluşturur.

    İstemciler uygulama başlangıcında oluşturulan paylaşımlı havuzlardan, oturum
    deposu ve token codec'i ise app.state'teki tekil nesnelerden gelir.
    """
    redis_client = RedisClient(pool=redis_pool)
    db_client = AsyncPostgresClient(pool=postgres_pool)

    return FacultyService(
        store=get_session_store(request),
        codec=get_token_codec(request),
        redis_client=redis_client,
        ledger=AttendanceLedger(db_client),
        qr_record_ttl=timedelta(minutes=settings.SESSION_MAX_AGE_MINUTES),
    )


def get_student_service(
    request: Request,
    redis_pool: redis.ConnectionPool = Depends(get_redis_pool),
    postgres_pool: asyncpg.Pool = Depends(get_postgres_pool),
) -> StudentService:
    """
    Her istek için yeni bir StudentService nesnesi oluşturur.

    FacultyService ile aynı mantıkla çalışır; model, eşleştirici ve deneme
    sayacı süreç genelinde paylaşılır.
    """
    state = request.app.state
    redis_client = RedisClient(pool=redis_pool)
    db_client = AsyncPostgresClient(pool=postgres_pool)
    pipeline: EmbeddingPipeline = getattr(state, "embedding_pipeline", None)
    matcher: FaceMatcher = state.face_matcher
    rate_limiter: RateLimiter = state.rate_limiter

    return StudentService(
        store=get_session_store(request),
        codec=get_token_codec(request),
        redis_client=redis_client,
        db_client=db_client,
        ledger=AttendanceLedger(db_client),
        matcher=matcher,
        rate_limiter=rate_limiter,
        pipeline=pipeline,
        embedding_size=pipeline.config.embedding_size if pipeline else None,
        max_attempts=settings.FACE_RATE_LIMIT_MAX_ATTEMPTS,
        window_minutes=settings.FACE_RATE_LIMIT_WINDOW_MINUTES,
    )
