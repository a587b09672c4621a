from fastapi import (
    APIRouter, Depends, Request, File, Form, UploadFile
)

from ..services.student_service import StudentService, FaceVerification
from ..models.db_models import User
from .schemas.attendance import (
    QRRedeemRequest,
    QRRedeemResponse,
    FaceVerifyRequest,
    FaceVerifyResponse,
    FaceProfileRequest,
    FaceProfileResponse,
)
from .auth import get_current_user, require_role
from .dependencies import get_student_service
from .utilities.limiter import limiter

router = APIRouter(prefix="/student", tags=["Student Endpoints"])


def _face_response(result: FaceVerification) -> FaceVerifyResponse:
    return FaceVerifyResponse(
        success=result.success,
        message=result.message,
        similarity=result.similarity,
        threshold=result.threshold,
        confidence=result.confidence,
        already_marked=result.already_marked,
        sessionTimestamp=result.session_timestamp,
    )


@router.post(
    "/attendance/qr",
    response_model=QRRedeemResponse,
    summary="Mark attendance with a scanned QR code"
)
@limiter.limit("10/minute")
async def redeem_qr(
    request: Request,
    redeem_request: QRRedeemRequest,
    user: User = Depends(get_current_user),
    service: StudentService = Depends(get_student_service)
):
    """
    Validates the scanned token (structure, stored expiry, session state and
    enrollment) and records the student as present for the session day.
    Scanning twice on the same day returns `already_marked=true` instead of an error.
    """
    require_role(user, "Student")
    result = await service.redeem_qr_token(user, redeem_request.token)
    return QRRedeemResponse.model_validate(result)


@router.post(
    "/attendance/face",
    response_model=FaceVerifyResponse,
    summary="Mark attendance with a client-side face embedding"
)
@limiter.limit("10/minute")
async def verify_face(
    request: Request,
    verify_request: FaceVerifyRequest,
    user: User = Depends(get_current_user),
    service: StudentService = Depends(get_student_service)
):
    """
    Compares the submitted embedding with the enrolled face profile.
    - 403 `FACE_MISMATCH` carries the similarity and threshold.
    - 404 `NO_FACE_PROFILE` when the student never enrolled.
    - 429 `RATE_LIMITED` after too many attempts in the window.
    """
    require_role(user, "Student")
    session_timestamp = verify_request.session_info.session_timestamp if verify_request.session_info else None
    result = await service.verify_face_attendance(
        user, verify_request.class_id, verify_request.embedding, session_timestamp=session_timestamp
    )
    return _face_response(result)


@router.post(
    "/attendance/face-image",
    response_model=FaceVerifyResponse,
    summary="Mark attendance with an uploaded face image"
)
@limiter.limit("10/minute")
async def verify_face_image(
    request: Request,
    class_id: str = Form(...),
    image: UploadFile = File(...),
    user: User = Depends(get_current_user),
    service: StudentService = Depends(get_student_service)
):
    """
    The embedding is extracted on the server, then the same flow as
    `/attendance/face` is applied. The image must be sent as `multipart/form-data`.
    """
    require_role(user, "Student")
    image_bytes = await image.read()
    result = await service.verify_face_image(user, class_id, image_bytes)
    return _face_response(result)


@router.post(
    "/face-profile",
    response_model=FaceProfileResponse,
    summary="Enroll or extend the student's face profile"
)
@limiter.limit("5/minute")
async def enroll_face_profile(
    request: Request,
    profile_request: FaceProfileRequest,
    user: User = Depends(get_current_user),
    service: StudentService = Depends(get_student_service)
):
    require_role(user, "Student")
    profile = await service.enroll_face_profile(user, profile_request.embeddings, replace=profile_request.replace)
    return FaceProfileResponse(
        profile_id=profile.profile_id,
        owner_id=profile.owner_id,
        embedding_count=len(profile.embeddings),
    )
