from typing import Any, Dict

# --- Servis katmanı hata sınıfları ---
# Her hata sabit bir `code` ve HTTP durum kodu taşır; main.py'deki exception
# handler bunları {"error": ..., "code": ..., **payload} biçiminde döndürür.

class ServiceError(Exception):
    """Servis katmanı için genel hata sınıfı."""
    status_code = 400
    code = "SERVICE_ERROR"

    def __init__(self, error: str, **payload: Any):
        super().__init__(error)
        self.error = error
        self.payload = payload

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.error, "code": self.code, **self.payload}

class InvalidRequest(ServiceError):
    code = "INVALID_REQUEST"

class SessionNotFound(ServiceError):
    status_code = 404
    code = "SESSION_NOT_FOUND"

class TokenMalformed(ServiceError):
    code = "TOKEN_MALFORMED"

class TokenExpired(ServiceError):
    code = "TOKEN_EXPIRED"

class NotEnrolled(ServiceError):
    status_code = 403
    code = "NOT_ENROLLED"

class NoFaceProfile(ServiceError):
    status_code = 404
    code = "NO_FACE_PROFILE"

class FaceMismatch(ServiceError):
    status_code = 403
    code = "FACE_MISMATCH"

class RateLimited(ServiceError):
    status_code = 429
    code = "RATE_LIMITED"

class VerificationUnavailable(ServiceError):
    """Model yüklenemedi ya da çıkarım başarısız. Ayrıntı loglanır, kullanıcıya genel mesaj gider."""
    status_code = 503
    code = "VERIFICATION_UNAVAILABLE"

class StorageFailure(ServiceError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
