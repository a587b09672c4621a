# qattend/api/utilities/limiter.py

from fastapi import Request
import jwt

# Gerekli slowapi ve ayar importları
from slowapi import Limiter
from slowapi.util import get_remote_address

# config.py'den ayarları import et
from ...config.config import settings

def get_limiter_key(request: Request) -> str:
    """
    Rate limit için bir anahtar döndürür.
    Eğer istekte geçerli bir JWT token varsa, kullanıcı kimliğini anahtar olarak kullanır.
    Yoksa, istemcinin IP adresini kullanır.
    """
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ")[1]
        try:
            # Süre kontrolü gerekmiyor, sadece kullanıcı kimliği lazım.
            payload = jwt.decode(
                token,
                settings.SECRET_KEY,
                algorithms=[settings.ALGORITHM],
                options={"verify_exp": False}
            )
            user_id = payload.get("user_id")
            if user_id:
                return str(user_id)
        except jwt.PyJWTError:
            # Token geçersizse IP bazlı limite geri dön.
            pass

    return get_remote_address(request)

# NOT: RATE_LIMITER_REDIS_URL tanımlı değilse slowapi bellek içi depolama kullanır.
limiter = Limiter(key_func=get_limiter_key, storage_uri=settings.RATE_LIMITER_REDIS_URL)
