from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer layer can map it to a response without
    inspecting messages:
    - validation_error (400)
    - unauthorized (401)
    - conflict (409)
    - rate_limited (429)
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
    """Input failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class PasswordPolicyError(ValidationError):
    """Password does not meet the configured policy or is known to be breached."""

    def __init__(self, message: str, *, violations: Optional[list[str]] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.violations = violations or []
        self.detail.setdefault("violations", self.violations)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ConcurrencyConflictError(ConflictError):
    """A conditional write lost to a concurrent writer (409)."""
    error_code = "concurrency_conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordPolicyError",
    "AuthenticationError",
    "ConflictError",
    "ConcurrencyConflictError",
    "RateLimitedError",
]
