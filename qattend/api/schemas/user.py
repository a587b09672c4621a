from pydantic import BaseModel
from typing import Optional

# Internal representation of JWT data
class TokenData(BaseModel):
    user_id: Optional[str] = None
    role: Optional[str] = None
