from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on without parsing messages.
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


class PasswordReuseError(ValidationError):
    """New password matches the current one or a recent one (400)."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Bad email/password or a malformed, forged, or expired token.

    Deliberately coarse: the message never says which check failed.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactive(AuthenticationError):
    """Account exists and the password matched, but it is deactivated (401)."""
    error_code = "account_inactive"

    def __init__(self, message: str = "account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshUnavailable(AuthenticationError):
    """No renewal credential was presented or it failed verification (401)."""
    error_code = "refresh_unavailable"

    def __init__(self, message: str = "refresh unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many failed logins; carries the unlock time (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, until: datetime, message: Optional[str] = None) -> None:
        self.until = until
        super().__init__(
            message
            or "account is temporarily locked due to too many failed login attempts",
            detail={"lockUntil": until.isoformat()},
        )


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PermissionDenied(ForbiddenError):
    """The principal's ability does not allow the action (403)."""

    def __init__(self, message: str = "insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionMissing(ForbiddenError):
    """A CSRF check was attempted without a live session (403)."""
    error_code = "session_missing"

    def __init__(self, message: str = "session required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CsrfMismatch(ForbiddenError):
    """Missing or wrong anti-forgery token (403)."""
    error_code = "csrf_mismatch"

    def __init__(self, message: str = "missing or invalid CSRF token", **kwargs) -> None:
        super().__init__(message, **kwargs)


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


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordReuseError",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountInactive",
    "RefreshUnavailable",
    "AccountLocked",
    "ForbiddenError",
    "PermissionDenied",
    "SessionMissing",
    "CsrfMismatch",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
