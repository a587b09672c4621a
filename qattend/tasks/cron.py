import logging

from ..models.session_models import Session
from ..services.attendance_ledger import AttendanceLedger
from ..services.faculty_service import backfill_session_absences
from ..services.session_store import SessionStore

logger = logging.getLogger(__name__)


async def sweep_sessions_task(store: SessionStore, max_age_minutes: int):
    """
    Periyodik olarak çalışır ve max_age'den eski oturumları bellekten siler.
    Bekleyen otomatik devamsızlık görevleri de iptal edilir.
    """
    logger.info("Running sweep_sessions_task...")
    try:
        removed = store.sweep_expired(max_age_minutes)
        logger.info(f"Session sweep complete, {removed} session(s) removed.")
    except Exception as e:
        logger.error(f"Session sweep failed: {e}", exc_info=True)


def make_auto_absent_callback(ledger: AttendanceLedger):
    """SessionStore'un otomatik devamsızlık görevine verilecek geri çağrıyı üretir."""

    async def auto_absent_task(session: Session):
        logger.info(f"Auto-absence triggered for session {session.session_id} (class {session.class_id}).")
        result = await backfill_session_absences(ledger, session)
        if result.failed:
            logger.warning(f"Auto-absence could not record {len(result.failed)} student(s) for session {session.session_id}.")

    return auto_absent_task
