from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    TRANSIENT = "transient"  # timeout / network, retried a bounded number of times
    VALIDATION = "validation"  # unresolved parameters, turned into a clarification question
    CONFLICT = "conflict"  # duplicate booking, concurrent turn
    UNKNOWN = "unknown"


class TransientError(Exception):
    """Store, model or backend call failed for a reason worth retrying."""


class LLMError(TransientError):
    pass


class BookingBackendError(Exception):
    def __init__(self, message: str, *, transient: bool = False, status_code: Optional[int] = None):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        if self.transient:
            return ErrorKind.TRANSIENT
        if self.status_code in (409, 422):
            return ErrorKind.CONFLICT
        return ErrorKind.UNKNOWN


class ClarificationNeeded(Exception):
    """A command parameter could not be resolved; ask the customer instead of guessing."""

    def __init__(self, question: str, options: Optional[list[str]] = None, field: Optional[str] = None):
        self.question = question
        self.options = options or []
        self.field = field
        super().__init__(question)


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", kind: ErrorKind = ErrorKind.UNKNOWN) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, kind=kind)
