import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
import jwt
from pydantic import ValidationError

from .schemas.user import TokenData
from ..models.db_models import User
from ..config.config import settings

# Bu modül için özel bir logger oluşturuyoruz.
logger = logging.getLogger(__name__)

# Token'lar kimlik sağlayıcı tarafından üretilir; burada sadece decode edilir.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def decode_access_token(token: str) -> TokenData:
    """Token'ı imza ve süre kontrolüyle decode eder ve TokenData ile doğrular."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    return TokenData.model_validate(payload)


async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """
    Bearer token'ı decode eder ve çağıranın kimliğini ve rolünü döndürür.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        token_data = decode_access_token(token)
    except (jwt.PyJWTError, ValidationError) as e:
        # Hem JWT hatalarını (süre dolması, imza hatası) hem de Pydantic doğrulama
        # hatalarını (eksik alan, yanlış tip) yakalıyoruz.
        logger.warning(f"Token validation error: {e}")
        raise credentials_exception

    if token_data.user_id is None or token_data.role is None:
        logger.warning("Token is valid but missing 'user_id' or 'role'.")
        raise credentials_exception

    return User(user_id=token_data.user_id, role=token_data.role)


def require_role(user: User, role: str):
    """Kullanıcının beklenen role sahip olduğunu doğrular (Admin her işlemi yapabilir)."""
    if role not in user.role and "Admin" not in user.role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"This operation is only valid for {role.lower()} accounts."
        )
