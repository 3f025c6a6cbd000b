"""
Error taxonomy for calls to the managed backend.

Connectivity failures are transient and eligible for retry, authorization and
validation failures are permanent and surfaced to the user immediately.
"""

from typing import Any, Dict, Optional


class BackendError(Exception):
    """Base class for every failure reported by the backend or the transport"""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None,
                 details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.details = details

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} (code {self.code})"
        return self.message


class ConnectivityError(BackendError):
    """The request could not reach the service or the service could not answer"""
    pass


class RequestTimeoutError(ConnectivityError):
    """The request exceeded its time budget (client-side or statement timeout)"""
    pass


class AuthorizationError(BackendError):
    """The principal is not allowed to perform the operation"""
    pass


class ValidationError(BackendError):
    """The request was rejected because of its content (duplicate, bad value...)"""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None,
                 details: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message, code=code, status=status, details=details)
        self.field = field


class NotFoundError(BackendError):
    """The requested table, function or row does not exist"""
    pass


# Postgres / PostgREST error codes
STATEMENT_TIMEOUT_CODE = "57014"
INSUFFICIENT_PRIVILEGE_CODE = "42501"
UNIQUE_VIOLATION_CODE = "23505"
VALIDATION_CODES = {
    UNIQUE_VIOLATION_CODE,
    "23502",  # not_null_violation
    "23503",  # foreign_key_violation
    "23514",  # check_violation
    "22P02",  # invalid_text_representation (bad uuid / enum value)
}
JWT_CODE_PREFIX = "PGRST30"


def error_from_response(status: int, payload: Any) -> BackendError:
    """
    Build the matching BackendError for an HTTP error response

    Args:
        status: HTTP status code
        payload: Decoded JSON body (PostgREST or auth API error object) or raw text

    Returns:
        BackendError subclass instance
    """
    body: Dict[str, Any] = payload if isinstance(payload, dict) else {}
    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or body.get("error")
        or (payload if isinstance(payload, str) and payload else f"HTTP {status}")
    )
    code = body.get("code") or body.get("error_code")
    code = str(code) if code is not None else None
    details = body.get("details") or body.get("hint")

    if code == STATEMENT_TIMEOUT_CODE:
        return RequestTimeoutError(message, code=code, status=status, details=details)

    if code == INSUFFICIENT_PRIVILEGE_CODE or (code and code.startswith(JWT_CODE_PREFIX)) \
            or status in (401, 403) or "JWT" in str(message):
        return AuthorizationError(message, code=code, status=status, details=details)

    if code in VALIDATION_CODES or status in (400, 409, 422):
        return ValidationError(message, code=code, status=status, details=details)

    if status == 404:
        return NotFoundError(message, code=code, status=status, details=details)

    if status >= 500 or status == 408 or status == 429:
        return ConnectivityError(message, code=code, status=status, details=details)

    return BackendError(message, code=code, status=status, details=details)
