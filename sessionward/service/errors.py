from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    """Outcome classes for credential and session operations.

    Only ``TRANSIENT`` is worth retrying; the core itself never retries.
    """

    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"

    @property
    def retriable(self) -> bool:
        return self is FailureKind.TRANSIENT


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    # Internal cause for logs; never sent to clients
    reason: str
    detail: Optional[dict] = None


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls, kind: FailureKind, reason: str, detail: Optional[dict] = None
    ) -> "Result[T]":
        return cls(failure=Failure(kind=kind, reason=reason, detail=detail))


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - unavailable (503)
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
    """Credentials or session were rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested identity not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Handle or email already taken (409)."""
    status_code = 409
    error_code = "conflict"


class UnavailableError(ServiceError):
    """Credential store unavailable or timed out; safe to retry (503)."""
    status_code = 503
    error_code = "unavailable"


_KIND_TO_ERROR = {
    FailureKind.VALIDATION: ValidationError,
    FailureKind.UNAUTHORIZED: AuthenticationError,
    FailureKind.CONFLICT: ConflictError,
    FailureKind.NOT_FOUND: NotFoundError,
    FailureKind.TRANSIENT: UnavailableError,
}


def error_for(failure: Failure, message: Optional[str] = None) -> ServiceError:
    """Build the ServiceError for a failure, using ``message`` as the client text."""
    error_cls = _KIND_TO_ERROR[failure.kind]
    return error_cls(message or failure.kind.value.replace("_", " "), detail=failure.detail)


__all__ = [
    "FailureKind",
    "Failure",
    "Result",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "UnavailableError",
    "error_for",
]
