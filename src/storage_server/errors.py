"""Error taxonomy for the object lifecycle engine.

Every failure that reaches a caller is a `StorageError` carrying an
`ErrorKind` tag plus a human-readable cause. The HTTP layer maps the kind to
a status code in one place; nothing else inspects exception types.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable, machine-readable failure kinds."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    UPSTREAM_FETCH = "upstream_fetch"
    INTERNAL = "internal"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.CAPACITY_EXCEEDED: 413,
    ErrorKind.UPSTREAM_FETCH: 502,
    ErrorKind.INTERNAL: 500,
}


class StorageError(Exception):
    """Base class. Subclasses only pin the kind and a default cause."""

    kind: ErrorKind = ErrorKind.INTERNAL
    default_cause: str = "Internal Server Error"

    def __init__(self, cause: str | None = None) -> None:
        self.cause = cause or self.default_cause
        super().__init__(self.cause)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "kind": self.kind.value, "cause": self.cause}


class ValidationError(StorageError):
    kind = ErrorKind.VALIDATION
    default_cause = "Invalid request"


class NotFoundError(StorageError):
    kind = ErrorKind.NOT_FOUND
    default_cause = "This file doesn't exist!"


class UnauthorizedError(StorageError):
    kind = ErrorKind.UNAUTHORIZED
    default_cause = "Unauthorized"


class CapacityExceededError(StorageError):
    kind = ErrorKind.CAPACITY_EXCEEDED
    default_cause = "File too large"


class UpstreamFetchError(StorageError):
    kind = ErrorKind.UPSTREAM_FETCH
    default_cause = "Error fetching file from URL"


class InternalError(StorageError):
    kind = ErrorKind.INTERNAL
