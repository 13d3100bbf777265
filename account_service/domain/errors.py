"""Typed outcomes returned by the lifecycle engine and the gating pipeline.

Operations hand back ``Ok(value)`` or ``Err(ServiceError)``; callers branch on
the result instead of catching exceptions. ``ErrorKind`` pins the HTTP status
so the boundary never has to guess it from a message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION_FAILED = "validation_failed"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
}


class Messages:
    """User-facing message catalogue."""

    VALIDATION_ERROR = "Validation error"
    USER_EXISTS = "User already exists"
    USER_NOT_FOUND = "User not found"
    INVALID_CREDENTIALS = "Invalid email or password"
    ACCOUNT_DEACTIVATED = "User account is deactivated"
    TOKEN_REQUIRED = "Authentication token required"
    TOKEN_INVALID = "Invalid or expired token"
    TOO_MANY_REQUESTS = "Too many requests, please slow down."
    TOO_MANY_AUTH_ATTEMPTS = "Too many authentication attempts, please try again later."
    INTERNAL_ERROR = "Internal server error"
    NOT_FOUND = "Resource not found"
    METHOD_NOT_ALLOWED = "Method not allowed"
    BAD_REQUEST = "Bad request"
    PAYLOAD_TOO_LARGE = "Request entity too large"
    USER_CREATED = "User created successfully"
    LOGIN_SUCCESS = "Login successful"
    LOGOUT_SUCCESS = "Logout successful"
    USER_UPDATED = "User updated successfully"
    USER_DELETED = "User deleted successfully"
    PROFILE_RETRIEVED = "Profile retrieved successfully"
    AUDIT_RETRIEVED = "Audit events retrieved successfully"


@dataclass(frozen=True, slots=True)
class ServiceError:
    """A failure with a fixed status, a safe message, and an internal code for logs."""

    kind: ErrorKind
    message: str
    code: str = ""
    details: tuple[str, ...] = field(default_factory=tuple)
    retry_after: int | None = None

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @classmethod
    def validation(cls, details: list[str] | tuple[str, ...]) -> "ServiceError":
        return cls(ErrorKind.VALIDATION_FAILED, Messages.VALIDATION_ERROR, "validation_failed", tuple(details))

    @classmethod
    def conflict(cls, message: str = Messages.USER_EXISTS) -> "ServiceError":
        return cls(ErrorKind.CONFLICT, message, "conflict")

    @classmethod
    def unauthorized(cls, code: str, message: str = Messages.TOKEN_INVALID) -> "ServiceError":
        return cls(ErrorKind.UNAUTHORIZED, message, code)

    @classmethod
    def forbidden(cls, code: str, message: str) -> "ServiceError":
        return cls(ErrorKind.FORBIDDEN, message, code)

    @classmethod
    def not_found(cls, message: str = Messages.USER_NOT_FOUND) -> "ServiceError":
        return cls(ErrorKind.NOT_FOUND, message, "not_found")

    @classmethod
    def payload_too_large(cls, limit: int) -> "ServiceError":
        return cls(
            ErrorKind.PAYLOAD_TOO_LARGE,
            Messages.PAYLOAD_TOO_LARGE,
            "payload_too_large",
            (f"Request body must be at most {limit} bytes",),
        )

    @classmethod
    def rate_limited(cls, retry_after: int, message: str = Messages.TOO_MANY_REQUESTS) -> "ServiceError":
        return cls(ErrorKind.RATE_LIMITED, message, "rate_limited", retry_after=max(retry_after, 1))

    @classmethod
    def internal(cls, code: str = "internal") -> "ServiceError":
        return cls(ErrorKind.INTERNAL, Messages.INTERNAL_ERROR, code)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    error: ServiceError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
