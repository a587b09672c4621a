import logging
from typing import Optional
import redis.asyncio as redis

from ..models.session_models import QRTokenRecord

logger = logging.getLogger(__name__)

class RedisClient:
    """
    QR token kayıtlarını ve paylaşılan deneme sayaçlarını tutan Redis istemcisi.
    """

    def __init__(self, pool: redis.ConnectionPool):
        self._redis = redis.Redis(connection_pool=pool, decode_responses=True)

    @property
    def connection(self) -> redis.Redis:
        """Ham bağlantı; RedisAttemptStore gibi alt seviye kullanıcılar için."""
        return self._redis

    # ===== QR Token Management =====

    async def save_qr_token(self, record: QRTokenRecord, ttl: int):
        """
        Token meta verisini (qr_expiration dahil) kaydeder. TTL, token'ın kendi
        süresinden uzun tutulur; böylece geç gelen okutmalar "süresi dolmuş"
        olarak ayırt edilebilir, "geçersiz" olarak değil.
        """
        key = f"qr_token:{record.token}"
        await self._redis.set(key, record.model_dump_json(), ex=ttl)

    async def get_qr_token(self, token: str) -> Optional[QRTokenRecord]:
        key = f"qr_token:{token}"
        record_json = await self._redis.get(key)
        return QRTokenRecord.model_validate_json(record_json) if record_json else None

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
