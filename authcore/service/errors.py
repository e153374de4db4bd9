from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` used at the boundary and a
    stable ``error_code`` callers can branch on. Messages cross the service
    boundary verbatim.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConflictError(ServiceError):
    """Duplicate email on registration (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "user with this email already exists"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "user not found"


class InvalidCredentialsError(ServiceError):
    """Wrong email or password; never says which."""
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "invalid email or password"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"
    default_message = "account is temporarily locked due to multiple failed login attempts"


class AccountDeactivatedError(ServiceError):
    status_code = 403
    error_code = "account_deactivated"
    default_message = "account is deactivated"


class IncorrectPasswordError(ServiceError):
    """Current password mismatch on an already-identified account."""
    status_code = 400
    error_code = "incorrect_password"
    default_message = "current password is incorrect"


class InvalidRefreshTokenError(ServiceError):
    status_code = 401
    error_code = "invalid_refresh_token"
    default_message = "invalid refresh token"


class InvalidTokenError(ServiceError):
    status_code = 401
    error_code = "invalid_token"
    default_message = "invalid token"


class InvalidOrExpiredTokenError(ServiceError):
    status_code = 400
    error_code = "invalid_or_expired_token"
    default_message = "invalid or expired reset token"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class TransientError(ServiceError):
    """Store, cache or broker unavailable; the caller may retry (503)."""
    status_code = 503
    error_code = "unavailable"
    default_message = "service temporarily unavailable"


__all__ = [
    "ServiceError",
    "ConflictError",
    "NotFoundError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountDeactivatedError",
    "IncorrectPasswordError",
    "InvalidRefreshTokenError",
    "InvalidTokenError",
    "InvalidOrExpiredTokenError",
    "ForbiddenError",
    "TransientError",
]
