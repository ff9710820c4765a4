from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - validation_error, duplicate_email, cooldown, already_verified,
      invalid_or_expired_token (400)
    - token_expired, invalid_token, max_lifetime_exceeded,
      invalid_credentials, unauthorized (401)
    - forbidden (403)
    - not_found (404)
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


class DuplicateEmailError(ServiceError):
    """A verified account already owns this email (400)."""
    status_code = 400
    error_code = "duplicate_email"


class CooldownError(ServiceError):
    """A verification email was sent too recently (400)."""

    status_code = 400
    error_code = "cooldown"

    def __init__(self, remaining_minutes: int) -> None:
        unit = "minute" if remaining_minutes == 1 else "minutes"
        super().__init__(
            f"Please wait {remaining_minutes} {unit} before requesting another verification email",
            detail={"remaining_minutes": remaining_minutes},
        )
        self.remaining_minutes = remaining_minutes


class AlreadyVerifiedError(ServiceError):
    """The account's email is already verified (400)."""
    status_code = 400
    error_code = "already_verified"


class InvalidOrExpiredTokenError(ServiceError):
    """No unexpired ticket matches the presented token (400)."""
    status_code = 400
    error_code = "invalid_or_expired_token"


class TokenError(ServiceError):
    """A signed bearer token could not be accepted (401)."""
    status_code = 401
    error_code = "invalid_token"


class InvalidSignatureError(TokenError):
    """Token is malformed, tampered with, or signed for another purpose."""
    error_code = "invalid_token"


class ExpiredTokenError(TokenError):
    """Token signature is valid but its ``exp`` has passed."""
    error_code = "token_expired"


class MaxLifetimeExceededError(ExpiredTokenError):
    """Bounded refresh mode: the session reached its absolute lifetime."""
    error_code = "max_lifetime_exceeded"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; deliberately indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class UnauthorizedError(ServiceError):
    """Authentication missing or not permitted yet (401)."""
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


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateEmailError",
    "CooldownError",
    "AlreadyVerifiedError",
    "InvalidOrExpiredTokenError",
    "TokenError",
    "InvalidSignatureError",
    "ExpiredTokenError",
    "MaxLifetimeExceededError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
]
