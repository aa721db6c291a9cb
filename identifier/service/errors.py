from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    callers can branch on. Business outcomes use 4xx codes; infrastructure
    failures use 5xx and carry only an opaque message.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class DuplicateEmailError(ServiceError):
    status_code = 409
    error_code = "duplicate_email"

    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password. Both cases share code and message."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    error_code = "account_locked"

    def __init__(self, message: str = "account locked or suspended", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(self, message: str = "email address not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal failure (500)."""
    status_code = 500
    error_code = "server_error"


class HashingError(ServerError):
    error_code = "hashing_failure"


class StoreError(ServerError):
    error_code = "store_failure"


class SigningError(ServerError):
    error_code = "signing_failure"


__all__ = [
    "AccountLockedError",
    "AuthenticationError",
    "DuplicateEmailError",
    "EmailNotVerifiedError",
    "ForbiddenError",
    "HashingError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "NotFoundError",
    "ServerError",
    "ServiceError",
    "SigningError",
    "StoreError",
    "ValidationError",
]
