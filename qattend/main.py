# qattend/main.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import timedelta
import asyncio
import redis.asyncio as redis
import asyncpg
from apscheduler.schedulers.asyncio import AsyncIOScheduler as Scheduler
import logging

# Rate limiting için gerekli importlar
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Proje ayarlarını ve modüllerini import edelim
from .config.config import settings
from .logging.logging_config import setup_logging
from .api import faculty, student

# Gerekli istemci, servis ve görev (task) nesnelerini import edelim
from .db.redis_client import RedisClient
from .db.db_client import AsyncPostgresClient
from .models.face_models import FaceModelConfig
from .services.attendance_ledger import AttendanceLedger
from .services.errors import ServiceError
from .services.rate_limiter import InMemoryAttemptStore, RateLimiter, RedisAttemptStore
from .services.session_store import SessionStore
from .tasks.cron import make_auto_absent_callback, sweep_sessions_task
from .tools.embedding_pipeline import EmbeddingPipeline
from .tools.face_matcher import FaceMatcher
from .tools.model_loader import FaceModelManager, ModelNotReady
from .tools.token_codec import TokenCodec

from .api.utilities.limiter import limiter

logger = logging.getLogger(__name__)

#adding empty cors for building frontend
from fastapi.middleware.cors import CORSMiddleware


def load_face_model_config() -> FaceModelConfig:
    if settings.FACE_MODEL_CONFIG_PATH:
        return FaceModelConfig.from_file(settings.FACE_MODEL_CONFIG_PATH, model_path=settings.FACE_MODEL_PATH)
    return FaceModelConfig(model_path=settings.FACE_MODEL_PATH)


async def _preload_face_model(model_manager: FaceModelManager):
    """Modeli arka planda yükler; ilk doğrulama isteği beklemek zorunda kalmaz."""
    try:
        await model_manager.load()
    except ModelNotReady as e:
        logger.error(f"Face model preload failed, server-side verification disabled until retry: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Uygulama başlatıldığında ve durdurulduğunda çalışacak olan yaşam döngüsü yöneticisi.
    """
    setup_logging()

    # Rate limiter'ı uygulama state'ine ekle
    app.state.limiter = limiter

    logger.info("Uygulama başlatılıyor...")

    postgres_pool = None
    redis_pool = None
    scheduler = Scheduler()

    app.state.token_codec = TokenCodec(ttl=timedelta(minutes=settings.QR_TOKEN_TTL_MINUTES))
    app.state.face_matcher = FaceMatcher(threshold=settings.FACE_MATCH_THRESHOLD)
    auto_absent_callback = None
    app.state.rate_limiter = RateLimiter(InMemoryAttemptStore())

    try:
        postgres_pool = await asyncpg.create_pool(
            dsn=settings.DATABASE_URL, min_size=5, max_size=20
        )
        redis_pool = redis.ConnectionPool.from_url(
            settings.APPLICATION_REDIS_URL, decode_responses=True
        )

        app.state.postgres_pool = postgres_pool
        app.state.redis_pool = redis_pool
        logger.info("PostgreSQL ve Redis bağlantı havuzları başarıyla oluşturuldu.")

        db_client = AsyncPostgresClient(pool=postgres_pool)
        redis_client = RedisClient(pool=redis_pool)
        await db_client.init_schema()

        # Deneme sayacı tüm worker'lar arasında paylaşılsın diye Redis'e taşınır.
        app.state.rate_limiter = RateLimiter(RedisAttemptStore(redis_client.connection))
        app.state.redis_client = redis_client

        auto_absent_callback = make_auto_absent_callback(AttendanceLedger(db_client))

    except Exception as e:
        logger.error(f"HATA: Başlangıç sırasında bir hata oluştu: {e}", exc_info=True)
        # Hata durumunda state'i temizle
        app.state.postgres_pool = None
        app.state.redis_pool = None
        app.state.redis_client = None

    app.state.session_store = SessionStore(
        scheduler=scheduler,
        on_expire=auto_absent_callback,
        auto_absent_delay=timedelta(minutes=settings.AUTO_ABSENT_DELAY_MINUTES),
    )
    scheduler.add_job(
        sweep_sessions_task, "interval", minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES,
        args=[app.state.session_store, settings.SESSION_MAX_AGE_MINUTES], id="sweep_sessions"
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Zamanlanmış görevler (cron jobs) başarıyla başlatıldı.")

    try:
        model_manager = FaceModelManager(
            load_face_model_config(), load_timeout=settings.MODEL_LOAD_TIMEOUT_SECONDS
        )
        app.state.embedding_pipeline = EmbeddingPipeline(model_manager)
        app.state.model_preload_task = asyncio.create_task(_preload_face_model(model_manager))
    except (OSError, ValueError) as e:
        logger.error(f"Face model configuration could not be loaded: {e}", exc_info=True)
        app.state.embedding_pipeline = None

    yield

    logger.info("Uygulama kapatılıyor...")
    app.state.session_store.end_all()
    await sweep_sessions_task(app.state.session_store, settings.SESSION_MAX_AGE_MINUTES)
    if getattr(app.state, 'scheduler', None):
        app.state.scheduler.shutdown(wait=False)
        logger.info("Scheduler kapatıldı.")
    preload_task = getattr(app.state, 'model_preload_task', None)
    if preload_task and not preload_task.done():
        preload_task.cancel()
    if getattr(app.state, 'postgres_pool', None):
        await app.state.postgres_pool.close()
        logger.info("PostgreSQL bağlantı havuzu kapatıldı.")
    if getattr(app.state, 'redis_pool', None):
        await app.state.redis_pool.disconnect()
        logger.info("Redis bağlantı havuzu kapatıldı.")


# Ana FastAPI uygulamasını oluştur
app = FastAPI(
    title="QAttend API",
    description="QR ve yüz doğrulamalı yoklama sistemi API'si",
    version="1.0.0",
    lifespan=lifespan
)

origins = [
   "*"
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Servis katmanı hatalarını sabit kodlu JSON gövdesine çevirir."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


# Rate limit aşıldığında çalışacak hata yöneticisini ekle
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(ServiceError, service_error_handler)

# API router'larını uygulamaya dahil et
app.include_router(faculty.router, prefix="/api/v1")
app.include_router(student.router, prefix="/api/v1")

@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """Uygulamanın ayakta ve sağlıklı olup olmadığını kontrol etmek için basit bir endpoint."""
    pipeline = getattr(request.app.state, "embedding_pipeline", None)
    redis_client = getattr(request.app.state, "redis_client", None)
    return {
        "status": "ok",
        "message": "QAttend API is running.",
        "redis_ok": bool(redis_client and await redis_client.ping()),
        "face_model_ready": bool(pipeline and pipeline.model_manager.is_ready),
    }
