from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Optional

class SessionKind(str, Enum):
    QR = "qr"
    MANUAL = "manual"
    HYBRID = "hybrid"

class Session(BaseModel):
    """
    Represents an attendance session held in the in-memory SessionStore.
    Only `active` is ever mutated; a session id is never reused.
    """
    session_id: str = Field(..., description="Opaque identifier, never contains '_' or ':'")
    class_id: str
    created_at: datetime
    kind: SessionKind
    active: bool = True

class IssuedToken(BaseModel):
    """A freshly minted session token together with its separately stored expiry."""
    token: str
    class_id: str
    session_id: str
    session_timestamp: datetime = Field(..., description="Session creation instant embedded in the token")
    expires_at: datetime = Field(..., description="Absolute expiry; stored as qr_expiration, not inside the token")

class DecodedToken(BaseModel):
    """
    Result of structurally decoding a session token. `is_valid` says nothing
    about expiry; the caller checks that against the stored qr_expiration.
    """
    class_id: str
    session_id: str
    session_timestamp: datetime
    is_valid: bool = True
    is_legacy: bool = False
    nonce: Optional[str] = Field(None, description="Internal only, never returned to clients")
    marker: Optional[str] = Field(None, description="Legacy suffix such as FACE_VERIFICATION")

class QRTokenRecord(BaseModel):
    """
    Represents the issued token metadata stored in Redis; the single place
    where the token's expiry (qr_expiration) lives.
    """
    token: str
    class_id: str
    session_id: str
    session_timestamp: datetime
    qr_expiration: datetime
