from fastapi import APIRouter, Depends, Response, Request, status
from typing import Optional

from ..services.faculty_service import FacultyService
from ..models.db_models import User
from ..models.session_models import SessionKind
from .schemas.session import (
    SessionCreateRequest,
    SessionOpenResponse,
    SessionResponse,
    AttendanceBatchRequest,
    BatchResultResponse,
)
from .auth import get_current_user, require_role
from .dependencies import get_faculty_service
from .utilities.limiter import limiter

router = APIRouter(prefix="/faculty", tags=["Faculty Endpoints"])

# Servis hataları (ServiceError) main.py'deki exception handler tarafından
# {"error", "code", ...} gövdesiyle döndürülür.

# === BÖLÜM 1: OTURUM YÖNETİMİ ===

@router.post("/sessions", response_model=SessionOpenResponse, status_code=status.HTTP_201_CREATED, summary="Open a new attendance session")
@limiter.limit("10/minute")
async def open_session(request: Request, create_request: SessionCreateRequest, user: User = Depends(get_current_user), service: FacultyService = Depends(get_faculty_service)):
    require_role(user, "Faculty")
    session, issued = await service.open_session(create_request.class_id, create_request.kind)
    return SessionOpenResponse(
        session=SessionResponse.model_validate(session),
        token=issued.token if issued else None,
        expires_at=issued.expires_at if issued else None,
    )

@router.post("/sessions/{session_id}/end", status_code=status.HTTP_204_NO_CONTENT, summary="End an attendance session")
@limiter.limit("10/minute")
async def end_session(request: Request, session_id: str, user: User = Depends(get_current_user), service: FacultyService = Depends(get_faculty_service)):
    require_role(user, "Faculty")
    service.end_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.get("/classes/{class_id}/sessions/active", response_model=Optional[SessionResponse], summary="Get the active session of a class")
@limiter.limit("60/minute")
async def get_active_session(request: Request, class_id: str, kind: Optional[SessionKind] = None, user: User = Depends(get_current_user), service: FacultyService = Depends(get_faculty_service)):
    require_role(user, "Faculty")
    session = service.get_active_session(class_id, kind)
    return SessionResponse.model_validate(session) if session else None

# === BÖLÜM 2: YOKLAMA KAYITLARI ===

@router.post("/sessions/{session_id}/attendance", response_model=BatchResultResponse, summary="Record attendance for many students at once")
@limiter.limit("20/minute")
async def mark_attendance(request: Request, session_id: str, batch_request: AttendanceBatchRequest, user: User = Depends(get_current_user), service: FacultyService = Depends(get_faculty_service)):
    require_role(user, "Faculty")
    result = await service.mark_attendance(
        session_id, [(entry.student_id, entry.status) for entry in batch_request.records]
    )
    return BatchResultResponse.model_validate(result)

@router.post("/sessions/{session_id}/absences", response_model=BatchResultResponse, summary="Mark every unrecorded enrolled student absent")
@limiter.limit("10/minute")
async def backfill_absences(request: Request, session_id: str, user: User = Depends(get_current_user), service: FacultyService = Depends(get_faculty_service)):
    require_role(user, "Faculty")
    result = await service.backfill_absences(session_id)
    return BatchResultResponse.model_validate(result)
