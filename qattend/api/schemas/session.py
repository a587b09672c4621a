from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import List, Optional

from ...models.db_models import AttendanceStatus
from ...models.session_models import SessionKind

class SessionCreateRequest(BaseModel):
    """Request model for opening a new attendance session."""
    class_id: str = Field(..., min_length=1, description="Class identifier; may not contain '_' or ':'.")
    kind: SessionKind = Field(SessionKind.QR, description="qr, manual or hybrid.")

class SessionResponse(BaseModel):
    session_id: str
    class_id: str
    created_at: datetime
    kind: SessionKind
    active: bool

    model_config = ConfigDict(from_attributes=True)

class SessionOpenResponse(BaseModel):
    """The opened session plus its QR token. Manual sessions carry no token."""
    session: SessionResponse
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

class AttendanceEntry(BaseModel):
    student_id: str = Field(..., min_length=1)
    status: AttendanceStatus

class AttendanceBatchRequest(BaseModel):
    records: List[AttendanceEntry] = Field(..., min_length=1)

class BatchResultResponse(BaseModel):
    inserted: int
    updated: int
    unchanged: int
    failed: List[str] = Field(default_factory=list, description="Student ids whose record could not be written.")

    model_config = ConfigDict(from_attributes=True)
