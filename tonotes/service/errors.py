from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``.
    ``message`` is the user-visible string and never carries driver text,
    token contents or password hashes.
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
    """Request shape or format is invalid (400)."""
    status_code = 400
    error_code = "validation_error"


class PolicyViolationError(ValidationError):
    """Input is well formed but breaks a policy such as password strength (400)."""
    error_code = "policy_violation"


class NotEnrolledError(ValidationError):
    """Second factor operation on an account without 2FA (400)."""

    def __init__(self, message: str = "2FA is not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Credentials or token rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, badly signed or carries the wrong issuer."""
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class InvalidClaimsError(AuthenticationError):
    """Token verified but its type claim does not match the expected class."""
    error_code = "invalid_claims"


class InvalidRecoveryCodeError(AuthenticationError):
    def __init__(self, message: str = "Invalid recovery code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ProtectedSessionError(ForbiddenError):
    error_code = "protected_session"

    def __init__(self, message: str = "Cannot end a protected session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness conflict (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Cooldown or rate limit hit (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str, *, retry_after: Optional[int] = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UnavailableError(ServiceError):
    """Backing store unreachable or past its deadline (503)."""
    status_code = 503
    error_code = "unavailable"

    def __init__(
        self, message: str = "Service temporarily unavailable", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PolicyViolationError",
    "NotEnrolledError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "InvalidClaimsError",
    "InvalidRecoveryCodeError",
    "ForbiddenError",
    "ProtectedSessionError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "UnavailableError",
    "ServerError",
]
