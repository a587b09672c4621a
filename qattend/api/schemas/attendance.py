from pydantic import BaseModel, Field, ConfigDict
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

class QRRedeemRequest(BaseModel):
    token: str = Field(..., min_length=1, description="The scanned QR payload.")

class QRRedeemResponse(BaseModel):
    success: bool
    message: str
    already_marked: bool
    class_id: str
    session_date: date

    model_config = ConfigDict(from_attributes=True)

class SessionInfo(BaseModel):
    """Optional context sent by the client together with a face verification."""
    session_id: Optional[str] = None
    session_timestamp: Optional[datetime] = None

class FaceVerifyRequest(BaseModel):
    class_id: str = Field(..., min_length=1, description="Plain class id or '<classId>:<epochMillis>:FACE_VERIFICATION'.")
    embedding: List[float] = Field(..., min_length=1)
    session_info: Optional[SessionInfo] = None

class FaceVerifyResponse(BaseModel):
    """Successful verification. The live embedding is never echoed back."""
    success: bool
    message: str
    similarity: float
    threshold: float
    confidence: str
    already_marked: bool = False
    sessionTimestamp: datetime

class FaceProfileRequest(BaseModel):
    embeddings: List[List[float]] = Field(..., min_length=1)
    replace: bool = Field(True, description="Replace the existing profile instead of appending to it.")

class FaceProfileResponse(BaseModel):
    profile_id: UUID
    owner_id: str
    embedding_count: int
