import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, Set
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError

from ..models.session_models import Session, SessionKind

logger = logging.getLogger(__name__)

ExpireCallback = Callable[[Session], Awaitable[None]]

AUTO_ABSENT_KINDS = (SessionKind.QR, SessionKind.HYBRID)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def auto_absent_job_id(session_id: str) -> str:
    return f"auto_absent:{session_id}"


class SessionStore:
    """
    Süreç içi (in-memory) yoklama oturumu deposu.

    Durumlar: created -> active -> {ended | expired}. Bir oturumun yalnızca
    `active` alanı değişir; kimlikler asla tekrar kullanılmaz. QR ve hybrid
    oturumlar için APScheduler'a iptal edilebilir bir "otomatik devamsızlık"
    görevi kurulur. Görev tetiklendiğinde oturum pasif olur ve `on_expire`
    geri çağrısı (genelde defterin devamsızlık doldurması) çalışır.

    Args:
        scheduler: AsyncIOScheduler benzeri nesne (add_job / remove_job). None ise
            otomatik devamsızlık kurulmaz.
        on_expire: Oturum süresi dolduğunda çağrılan async fonksiyon.
        auto_absent_delay: Oturum açılışından devamsızlık işlemine kadar geçen süre.
        clock: Test için enjekte edilebilir saat.
    """

    def __init__(
        self,
        scheduler=None,
        on_expire: Optional[ExpireCallback] = None,
        auto_absent_delay: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._scheduler = scheduler
        self._on_expire = on_expire
        self._auto_absent_delay = auto_absent_delay
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._recorded: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def open(self, class_id: str, kind: SessionKind) -> Session:
        """Yeni aktif bir oturum açar. Aynı sınıfın diğer oturumlarına dokunmaz."""
        session = Session(
            session_id=uuid4().hex,
            class_id=class_id,
            created_at=self._clock(),
            kind=kind,
        )
        with self._lock:
            self._sessions[session.session_id] = session
            self._recorded[session.session_id] = set()

        if kind in AUTO_ABSENT_KINDS and self._scheduler is not None:
            self._scheduler.add_job(
                self._expire,
                "date",
                run_date=session.created_at + self._auto_absent_delay,
                args=[session.session_id],
                id=auto_absent_job_id(session.session_id),
                replace_existing=True,
            )

        logger.info(f"Session {session.session_id} opened for class '{class_id}' ({kind.value}).")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_active(self, class_id: str, kind: Optional[SessionKind] = None) -> Optional[Session]:
        """Sınıfın ilk eşleşen aktif oturumunu döndürür (doğrusal tarama)."""
        with self._lock:
            for session in self._sessions.values():
                if session.class_id != class_id or not session.active:
                    continue
                if kind is not None and session.kind != kind:
                    continue
                return session
        return None

    def get_active_at(self, class_id: str, created_at: datetime) -> Optional[Session]:
        """
        Oluşturulma anı verilen zamanla eşleşen aktif oturum. Token'lar zamanı
        milisaniyeye kırparak taşıdığından 1 ms altındaki fark eşleşme sayılır.
        """
        with self._lock:
            for session in self._sessions.values():
                if session.class_id != class_id or not session.active:
                    continue
                if abs(session.created_at - created_at) < timedelta(milliseconds=1):
                    return session
        return None

    def end(self, session_id: str) -> bool:
        """
        Oturumu sonlandırır ve bekleyen otomatik devamsızlık görevini iptal eder.
        Bilinmeyen ya da zaten bitmiş oturumlar için sadece uyarı loglanır.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.active:
                logger.warning(f"Attempted to end unknown or inactive session: {session_id}")
                return False
            self._sessions[session_id] = session.model_copy(update={"active": False})

        self._cancel_job(session_id)
        logger.info(f"Session {session_id} ended.")
        return True

    def end_all(self) -> int:
        with self._lock:
            active_ids = [sid for sid, s in self._sessions.items() if s.active]
        return sum(1 for sid in active_ids if self.end(sid))

    def sweep_expired(self, max_age_minutes: int = 60) -> int:
        """Oluşturulma zamanı max_age'den eski tüm oturumları tamamen siler."""
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        with self._lock:
            stale_ids = [sid for sid, s in self._sessions.items() if s.created_at < cutoff]
            for sid in stale_ids:
                del self._sessions[sid]
                self._recorded.pop(sid, None)

        for sid in stale_ids:
            self._cancel_job(sid)

        if stale_ids:
            logger.info(f"Swept {len(stale_ids)} session(s) older than {max_age_minutes} minutes.")
        return len(stale_ids)

    def mark_recorded(self, session_id: str, student_id: str):
        with self._lock:
            if session_id in self._sessions:
                self._recorded.setdefault(session_id, set()).add(student_id)

    def is_recorded(self, session_id: str, student_id: str) -> bool:
        with self._lock:
            return student_id in self._recorded.get(session_id, ())

    async def _expire(self, session_id: str):
        """Otomatik devamsızlık görevi: oturumu pasif yapar ve geri çağrıyı çalıştırır."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.active:
                return
            session = session.model_copy(update={"active": False})
            self._sessions[session_id] = session

        logger.info(f"Session {session_id} expired, running auto-absence.")
        if self._on_expire is None:
            return
        try:
            await self._on_expire(session)
        except Exception as e:
            logger.error(f"Auto-absence failed for session {session_id}: {e}", exc_info=True)

    def _cancel_job(self, session_id: str):
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(auto_absent_job_id(session_id))
        except JobLookupError:
            # Görev zaten çalışmış veya hiç kurulmamış (manual oturum).
            pass
