# qattend/tools/token_codec.py

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from ..models.session_models import DecodedToken, IssuedToken, Session

logger = logging.getLogger(__name__)

SECURE_PREFIX = "secure_"
LEGACY_SEPARATOR = ":"
FACE_VERIFICATION_MARKER = "FACE_VERIFICATION"
NONCE_BYTES = 16
DEFAULT_TTL = timedelta(minutes=5)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_epoch_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    # Tamsayı aritmetiği; float çarpımı milisaniyeyi bir eksik yuvarlayabilir.
    return (moment - EPOCH) // timedelta(milliseconds=1)


def _from_epoch_millis(segment: str) -> Optional[datetime]:
    # Sadece rakam kabul edilir; "12abc" gibi yarı sayısal değerler reddedilir.
    if not segment.isdigit():
        return None
    try:
        return EPOCH + timedelta(milliseconds=int(segment))
    except (OverflowError, ValueError):
        return None


class TokenCodec:
    """
    Yoklama oturumu token'larını üretir ve çözer. Durumsuzdur; token'ı çözmek
    için onu üreten sürecin bellekte olmasına gerek yoktur.

    Desteklenen formatlar:
        secure_<classId>_<sessionId>_<nonceHex>_<epochMillis>
        <classId>:<epochMillis>            (eski format, sadece geriye uyumluluk)
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL):
        self.ttl = ttl

    def encode(self, session: Session, now: Optional[datetime] = None) -> IssuedToken:
        """Oturum için yeni bir secure token ve ayrı saklanacak bitiş zamanını üretir."""
        for field_name, value in (("class_id", session.class_id), ("session_id", session.session_id)):
            if not value or "_" in value or LEGACY_SEPARATOR in value:
                raise ValueError(f"{field_name} '{value}' cannot be embedded in a session token")

        now = now or datetime.now(timezone.utc)
        nonce = secrets.token_hex(NONCE_BYTES)
        session_millis = _to_epoch_millis(session.created_at)
        token = f"{SECURE_PREFIX}{session.class_id}_{session.session_id}_{nonce}_{session_millis}"

        return IssuedToken(
            token=token,
            class_id=session.class_id,
            session_id=session.session_id,
            session_timestamp=_from_epoch_millis(str(session_millis)),
            expires_at=now + self.ttl,
        )

    def decode(self, token: str) -> Optional[DecodedToken]:
        """
        Token'ı yapısal olarak çözer. Önce secure format denenir, uymazsa eski
        formata düşülür. İkisi de uymazsa None döner. Süre kontrolü yapılmaz.
        """
        if not token:
            return None

        decoded = self._decode_secure(token)
        if decoded is not None:
            return decoded
        return self._decode_legacy(token)

    @staticmethod
    def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > expires_at

    def _decode_secure(self, token: str) -> Optional[DecodedToken]:
        if not token.startswith(SECURE_PREFIX):
            return None

        parts = token[len(SECURE_PREFIX):].split("_")
        if len(parts) < 4 or not parts[0] or not parts[1]:
            return None

        session_timestamp = _from_epoch_millis(parts[-1])
        if session_timestamp is None:
            logger.debug("Secure token has a non-numeric timestamp segment.")
            return None

        return DecodedToken(
            class_id=parts[0],
            session_id=parts[1],
            session_timestamp=session_timestamp,
            nonce=parts[-2],
        )

    def _decode_legacy(self, token: str) -> Optional[DecodedToken]:
        if LEGACY_SEPARATOR not in token:
            return None

        parts = token.split(LEGACY_SEPARATOR)
        if len(parts) not in (2, 3) or not parts[0]:
            return None

        class_id, millis = parts[0], parts[1]
        session_timestamp = _from_epoch_millis(millis)
        if session_timestamp is None:
            return None

        return DecodedToken(
            class_id=class_id,
            session_id=f"legacy_{class_id}_{millis}",
            session_timestamp=session_timestamp,
            is_legacy=True,
            marker=parts[2] if len(parts) == 3 else None,
        )


def split_face_verification_class_id(class_id: str) -> Tuple[str, Optional[datetime]]:
    """
    `<classId>:<epochMillis>:FACE_VERIFICATION` biçimindeki bileşik class_id'den
    gerçek sınıf kimliğini ve oturum zamanını ayıklar. Bileşik değilse değer
    olduğu gibi döner.
    """
    parts = class_id.split(LEGACY_SEPARATOR)
    if len(parts) == 3 and parts[2] == FACE_VERIFICATION_MARKER and parts[0]:
        return parts[0], _from_epoch_millis(parts[1])
    return class_id, None
