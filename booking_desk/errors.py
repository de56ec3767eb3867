"""Error kinds surfaced by the scheduling core."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class SchedulingError(Exception):
    """Base class; ``code`` is stable and safe to hand to callers."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    code = "validation"


class NotFoundError(SchedulingError):
    code = "not_found"


class InvalidStateError(NotFoundError):
    """The record exists but is not in the state the operation requires."""

    code = "invalid_state"


class ConflictError(SchedulingError):
    code = "conflict"


class UpstreamError(SchedulingError):
    """Calendar or video provider failure."""

    code = "upstream"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncTokenExpired(UpstreamError):
    pass


class SyncTimeout(UpstreamError):
    pass


class CredentialError(SchedulingError):
    """Stored credentials are unusable; the admin has to reconnect."""

    code = "credential"


@dataclass
class Result(Generic[T]):
    """Outcome of an upstream call that is allowed to degrade.

    Fatal failures are raised, not wrapped.
    """

    value: Optional[T] = None
    error: Optional[SchedulingError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def degraded(cls, error: SchedulingError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None
