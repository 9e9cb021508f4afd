from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - duplicate_user (400)
    - invalid_credentials (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - store_error (500)
    - upstream_error (500)
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


class DuplicateUserError(ServiceError):
    """Email already held by either user store (400)."""
    status_code = 400
    error_code = "duplicate_user"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; deliberately indistinguishable (400)."""
    status_code = 400
    error_code = "invalid_credentials"


class AuthenticationError(ServiceError):
    """No bearer credential supplied (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Bearer credential present but not valid (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class StoreError(ServiceError):
    """A datastore was unavailable or rejected an authoritative write (500)."""
    status_code = 500
    error_code = "store_error"


class UpstreamError(ServiceError):
    """The completion service failed or timed out (500)."""
    status_code = 500
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateUserError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "StoreError",
    "UpstreamError",
]
