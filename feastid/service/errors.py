from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` alongside its HTTP status:
    - validation_error (400)
    - unauthorized / invalid_credential (401)
    - forbidden / account_suspended (403)
    - not_found (404)
    - conflict (409)
    - rate_limited / attempts_exceeded (429)
    - store_unavailable (503)
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


class InvalidCredentialError(AuthenticationError):
    """Bad password, passcode or invite token (401)."""
    error_code = "invalid_credential"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountSuspendedError(ForbiddenError):
    error_code = "account_suspended"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Lost a concurrent update, e.g. two activations of one invite (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AttemptsExceededError(RateLimitedError):
    error_code = "attempts_exceeded"


class StoreUnavailableError(ServiceError):
    """The credential store timed out or is unreachable; callers may retry (503)."""
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialError",
    "ForbiddenError",
    "AccountSuspendedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AttemptsExceededError",
    "StoreUnavailableError",
]
