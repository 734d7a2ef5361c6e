from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - two_factor_invalid (401)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - service_error (503)
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


class TwoFactorError(AuthenticationError):
    """A second factor was missing or rejected (401)."""
    error_code = "two_factor_invalid"


class AccountLockedError(ServiceError):
    """Identity is locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. 2FA already enabled (409)."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(ServiceError):
    """Credential store or another backend is unreachable (503)."""
    status_code = 503
    error_code = "service_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TwoFactorError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "ServiceUnavailableError",
]
