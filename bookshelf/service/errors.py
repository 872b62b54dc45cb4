from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple


class ErrorKind(str, Enum):
    """Domain failure categories raised by services."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    INTERNAL = "internal"


_KIND_TO_STATUS: dict[ErrorKind, Tuple[int, str]] = {
    ErrorKind.VALIDATION: (400, "validation_error"),
    ErrorKind.AUTHENTICATION: (401, "unauthorized"),
    ErrorKind.AUTHORIZATION: (403, "forbidden"),
    ErrorKind.NOT_FOUND: (404, "not_found"),
    ErrorKind.CONFLICT: (409, "conflict"),
    ErrorKind.RATE_LIMIT: (429, "rate_limited"),
    ErrorKind.INTERNAL: (500, "server_error"),
}


def error_status(kind: ErrorKind) -> Tuple[int, str]:
    """Map an error kind to its HTTP status code and stable error code."""
    return _KIND_TO_STATUS[ErrorKind(kind)]


class ServiceError(Exception):
    """Base class for service-layer failures.

    Services signal with a ``kind``; the HTTP boundary turns it into a status
    code through :func:`error_status`. Stable codes:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return error_status(self.kind)[0]

    @property
    def error_code(self) -> str:
        return error_status(self.kind)[1]


class ValidationError(ServiceError):
    """Malformed or out-of-range input (400)."""
    kind = ErrorKind.VALIDATION


class AuthenticationError(ServiceError):
    """Missing, invalid, expired or blacklisted credential (401)."""
    kind = ErrorKind.AUTHENTICATION


class AuthorizationError(ServiceError):
    """Authenticated but not permitted (403)."""
    kind = ErrorKind.AUTHORIZATION


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Uniqueness violation, e.g. duplicate email (409)."""
    kind = ErrorKind.CONFLICT


class RateLimitError(ServiceError):
    """Rate limit exceeded (429)."""
    kind = ErrorKind.RATE_LIMIT


class InternalError(ServiceError):
    """Unclassified server-side failure (500)."""
    kind = ErrorKind.INTERNAL


__all__ = [
    "ErrorKind",
    "error_status",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "InternalError",
]
