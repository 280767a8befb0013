from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:

    - unauthorized (401)
    - validation_error (400)
    - conflict (409)
    - forbidden (403)
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


class MalformedCredential(ValueError):
    """A token string could not be parsed into claims.

    Raised by claim extraction only. Verification reports the same condition
    as ``False`` so it never reaches a caller of the request filter.
    """


class AuthenticationError(ServiceError):
    """Bad username or password (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotAuthenticatedError(AuthenticationError):
    """A protected route was reached without a verified bearer credential."""


class InvalidCredentialError(AuthenticationError):
    """Refresh token failed signature, issuer, type or expiry checks."""
    error_code = "invalid_credential"


class RecordNotFoundError(AuthenticationError):
    """Refresh token verified but no stored record holds it."""
    error_code = "record_not_found"


class RefreshExpiredError(AuthenticationError):
    """Stored record says the refresh token is past its expiry."""
    error_code = "refresh_expired"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class DuplicateIdentityError(ConflictError):
    """Registration clashed with an existing username or email."""


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


__all__ = [
    "ServiceError",
    "MalformedCredential",
    "AuthenticationError",
    "NotAuthenticatedError",
    "InvalidCredentialError",
    "RecordNotFoundError",
    "RefreshExpiredError",
    "ConflictError",
    "DuplicateIdentityError",
    "ForbiddenError",
]
