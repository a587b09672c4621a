import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"


def setup_logging(log_dir: Path = Path("logs"), level: int = logging.INFO):
    """
    Uygulama genelinde kullanılacak olan merkezi loglama yapılandırmasını kurar.

    Loglar hem konsola hem de 5MB'ı geçtiğinde dönen bir dosyaya yazılır.
    Yoklama ve yüz doğrulama olayları kendi modül logger'ları üzerinden
    (ör. 'qattend.services.student_service') bu handler'lara akar.
    """
    log_dir.mkdir(exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(level)

    # Uvicorn gibi kütüphanelerin varsayılan handler'larını temizleyerek
    # kendi standart formatımızı zorunlu kılıyoruz.
    if logger.hasHandlers():
        logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stdout_handler)

    file_handler = RotatingFileHandler(
        log_dir / "app.log",
        maxBytes=5*1024*1024,  # 5 MB
        backupCount=5
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    return logger
