"""
Outcome types shared by the service functions.

Service functions never raise for expected failures. They return a Result
carrying either a value or one ErrorKind, and the HTTP layer turns the kind
into a status code with status_for_error().
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    INVALID_REFERENCE = "invalid_reference"
    NOT_FOUND = "not_found"
    # duplicate-creation race resolved inside the registry, never returned
    CONFLICT_RECONCILED = "conflict_reconciled"
    STORE_UNAVAILABLE = "store_unavailable"


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.INVALID_REFERENCE: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT_RECONCILED: 200,
    ErrorKind.STORE_UNAVAILABLE: 500,
}


def status_for_error(kind: ErrorKind) -> int:
    """Map an error kind to its HTTP status code."""
    return _STATUS_BY_KIND[kind]


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an error kind with a client-safe message."""
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "Result[T]":
        return cls(error=error, message=message)
