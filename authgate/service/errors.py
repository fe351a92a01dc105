from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - dependency_unavailable (503)
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
    """Malformed input, correctable by the caller (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials, or an invalid or stale token (401).

    The message is deliberately generic; subclasses carry the specific
    reason for logging and must not be reported to the caller verbatim.
    """
    status_code = 401
    error_code = "unauthorized"
    public_message = "Authentication failed"


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but ``exp`` has passed."""
    pass


class TokenInvalidError(AuthenticationError):
    """Token is malformed, badly signed or carries unexpected claims."""
    pass


class AlgorithmMismatchError(TokenInvalidError):
    """Token header names an algorithm other than the configured one."""
    pass


class AccountLockedError(ServiceError):
    """Account is locked after repeated failed logins (423)."""
    status_code = 423
    error_code = "account_locked"


class AuthorizationError(ServiceError):
    """Valid identity with insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or phone (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class DependencyUnavailableError(ServiceError):
    """Circuit open or downstream call failed (503)."""
    status_code = 503
    error_code = "dependency_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "AlgorithmMismatchError",
    "AccountLockedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "DependencyUnavailableError",
]
