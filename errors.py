from typing import Any, Dict, List, Optional


class ApiError(Exception):
    """Base error mapped to a `{success: false, error}` JSON response."""
    status_code = 500
    message = "Vidinė serverio klaida"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message}
        body.update(self.extra)
        return body

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(ApiError):
    status_code = 400
    message = "Neteisingi duomenys"

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(message or (self.errors[0] if len(self.errors) == 1 else None), errors=self.errors)


class NotFound(ApiError):
    status_code = 404
    message = "Nerasta"


class Unauthorized(ApiError):
    status_code = 401
    message = "Reikalingas prisijungimas"

    @property
    def headers(self):
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(ApiError):
    status_code = 403
    message = "Prieiga draudžiama"


class RateLimited(ApiError):
    status_code = 429
    message = "Per daug užklausų. Bandykite vėliau."

    def __init__(self, message: Optional[str] = None, retry_after: int = 60, **extra: Any):
        self.retry_after = max(int(retry_after), 1)
        super().__init__(message, retry_after=self.retry_after, **extra)

    @property
    def headers(self):
        return {"Retry-After": str(self.retry_after)}


class UpstreamFailure(ApiError):
    """Mail provider or blob store failure. `detail` is logged, never returned."""
    status_code = 500
    message = "Vidinė serverio klaida"

    def __init__(self, detail: str, message: Optional[str] = None):
        self.detail = detail
        super().__init__(message)
