from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class AuthErrorKind(str, Enum):
    """Why a credential was rejected. Logged server side, never sent to clients."""

    AUTHENTICATION_REQUIRED = "authentication_required"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    VERSION_MISMATCH = "version_mismatch"
    USER_NOT_FOUND = "user_not_found"
    FORBIDDEN = "forbidden"


_MISSING_CREDENTIALS_MESSAGE = "authentication required"
_REJECTED_CREDENTIALS_MESSAGE = "invalid or expired token"


class TokenRejectedError(AuthenticationError):
    """A bearer or refresh credential failed validation (401).

    The message is one of two fixed strings so callers cannot tell which
    check rejected the credential; ``kind`` keeps the precise reason.
    """

    def __init__(self, kind: AuthErrorKind) -> None:
        message = (
            _MISSING_CREDENTIALS_MESSAGE
            if kind is AuthErrorKind.AUTHENTICATION_REQUIRED
            else _REJECTED_CREDENTIALS_MESSAGE
        )
        super().__init__(message)
        self.kind = kind


def error_for_kind(kind: AuthErrorKind) -> ServiceError:
    if kind is AuthErrorKind.FORBIDDEN:
        return ForbiddenError("insufficient permissions")
    return TokenRejectedError(kind)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AuthErrorKind",
    "TokenRejectedError",
    "error_for_kind",
]
