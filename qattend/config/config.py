import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """
    Ortam değişkenlerinden ayarları doğrudan ve basit bir şekilde tutan sınıf.
    """
    # Veritabanı
    DATABASE_URL: str = os.environ.get("DATABASE_URL")

    # Redis: QR token kayıtları ve dağıtık deneme sayacı için
    APPLICATION_REDIS_URL: str = os.environ.get("APPLICATION_REDIS_URL")
    # slowapi için; tanımlı değilse bellek içi depolama kullanılır.
    RATE_LIMITER_REDIS_URL: str = os.environ.get("RATE_LIMITER_REDIS_URL", "memory://")

    # JWT (sadece decode edilir, token üretimi dış servisin işidir)
    SECRET_KEY: str = os.environ.get("SECRET_KEY", "change-me")
    ALGORITHM: str = os.environ.get("ALGORITHM", "HS256")

    # Oturum ve QR token politikası
    QR_TOKEN_TTL_MINUTES: int = int(os.environ.get("QR_TOKEN_TTL_MINUTES", 5))
    AUTO_ABSENT_DELAY_MINUTES: int = int(os.environ.get("AUTO_ABSENT_DELAY_MINUTES", 5))
    SESSION_MAX_AGE_MINUTES: int = int(os.environ.get("SESSION_MAX_AGE_MINUTES", 60))
    SESSION_SWEEP_INTERVAL_MINUTES: int = int(os.environ.get("SESSION_SWEEP_INTERVAL_MINUTES", 30))

    # Yüz doğrulama
    # NOT: Eski istemci/sunucu yollarında 0.45 ile 0.82 arasında farklı eşikler vardı.
    # Tek bir değer burada tutulur; hangi değerin doğru olduğu ürün kararıdır.
    FACE_MATCH_THRESHOLD: float = float(os.environ.get("FACE_MATCH_THRESHOLD", 0.6))
    FACE_MODEL_PATH: str = os.environ.get("FACE_MODEL_PATH", "models/facenet.onnx")
    FACE_MODEL_CONFIG_PATH: str = os.environ.get("FACE_MODEL_CONFIG_PATH")
    MODEL_LOAD_TIMEOUT_SECONDS: float = float(os.environ.get("MODEL_LOAD_TIMEOUT_SECONDS", 60))
    FACE_RATE_LIMIT_MAX_ATTEMPTS: int = int(os.environ.get("FACE_RATE_LIMIT_MAX_ATTEMPTS", 5))
    FACE_RATE_LIMIT_WINDOW_MINUTES: int = int(os.environ.get("FACE_RATE_LIMIT_WINDOW_MINUTES", 10))

# Ayarların tek ve içe aktarılabilir bir örneğini oluştur
settings = Config()
