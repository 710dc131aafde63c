from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that is returned inside the error envelope.
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


class SessionNotFoundError(AuthenticationError):
    """Login session expired or never existed; the client must request a new OTP."""
    error_code = "session_not_found"


class InvalidCodeError(AuthenticationError):
    """Submitted OTP does not match, or the login session is already resolved."""
    error_code = "invalid_code"


class SessionCorruptedError(InvalidCodeError):
    """Try budget exhausted; the login session can never succeed."""
    error_code = "session_corrupted"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class UserDisabledError(ForbiddenError):
    error_code = "user_disabled"


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


class OtpThrottledError(RateLimitedError):
    """An unused OTP was issued too recently for this user."""
    error_code = "otp_throttled"


class OtpRateExceededError(RateLimitedError):
    """Too many OTPs issued for this user inside the rolling window."""
    error_code = "otp_rate_exceeded"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TransactionCommitError(ServerError):
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionNotFoundError",
    "InvalidCodeError",
    "SessionCorruptedError",
    "ForbiddenError",
    "UserDisabledError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "OtpThrottledError",
    "OtpRateExceededError",
    "ServerError",
    "TransactionCommitError",
]
