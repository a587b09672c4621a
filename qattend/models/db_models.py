# qattend/models/db_models.py

from pydantic import BaseModel, Field
from datetime import date, datetime
from enum import Enum
from typing import List
from uuid import UUID

class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"

class User(BaseModel):
    """
    The authenticated caller, decoded from the bearer token.
    """
    user_id: str = Field(..., description="Unique identifier of the account (student or faculty)")
    role: str = Field(..., description="Can be Faculty, Student, Admin")

class AttendanceRecord(BaseModel):
    """
    Represents a single student's attendance for one class on one day,
    mapping to the 'attendance' table. Unique on (student_id, class_id, session_date).
    """
    student_id: str
    class_id: str
    session_date: date = Field(..., description="Calendar date of the session, part of the uniqueness key")
    timestamp: datetime = Field(..., description="Exact session instant; informational only")
    status: AttendanceStatus

class FaceProfile(BaseModel):
    """
    Represents an enrolled face profile, mapping to 'face_profiles' and
    'face_profile_embeddings'. Embeddings are L2-normalized at capture time.
    """
    profile_id: UUID
    owner_id: str = Field(..., description="FK linking to the student who owns the profile")
    embeddings: List[List[float]] = Field(default_factory=list, description="Ordered enrollment embeddings")
