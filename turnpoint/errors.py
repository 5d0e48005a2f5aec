"""Error types for Turnpoint.

Two layers:

- ``Result`` (``Ok`` / ``Err``) for low-level helpers such as atomic writes,
  where the caller decides whether a failure is fatal.
- ``SnapshotError`` and its subclasses for store and service operations.
  These are raised, never returned, and always carry a machine-readable
  ``code`` plus a ``context`` dict (session id, node id, hash) so a failure
  can be diagnosed from the message alone.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class ErrorInfo:
    """Structured description of a failure."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on an Err result: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def ok(value: T) -> Ok[T]:
    return Ok(value)


def err(error: E) -> Err[E]:
    return Err(error)


# ============================================================================
# Exceptions
# ============================================================================


class SnapshotError(Exception):
    """Base class for all checkpoint engine failures."""

    code = "SNAPSHOT_ERROR"
    is_retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, context=dict(self.context))


class NotFoundError(SnapshotError):
    """A blob, tree, node or session was referenced but does not exist."""

    code = "NOT_FOUND"


class CorruptTreeError(SnapshotError):
    """A tree document failed to parse or references a missing blob."""

    code = "CORRUPT_TREE"


class CorruptBlobError(SnapshotError):
    """A stored blob does not decompress or does not match its hash."""

    code = "CORRUPT_BLOB"


class CorruptGraphError(SnapshotError):
    """A persisted session graph violates a structural invariant."""

    code = "CORRUPT_GRAPH"


class ConcurrentMutationConflict(SnapshotError):
    """HEAD moved between reading and writing a session graph."""

    code = "CONCURRENT_MUTATION"
    is_retryable = True


class IOFailure(SnapshotError):
    """Disk read or write failed after all retries."""

    code = "IO_FAILURE"


def from_info(info: ErrorInfo) -> IOFailure:
    """Lift an ``ErrorInfo`` from a Result-returning helper into an exception."""
    failure = IOFailure(info.message, **info.context)
    failure.code = info.code
    return failure


def format_error(error: SnapshotError | ErrorInfo | Exception) -> str:
    """Render an error for terminal output."""
    if isinstance(error, SnapshotError):
        return f"[{error.code}] {error}"
    if isinstance(error, ErrorInfo):
        return f"[{error.code}] {error.message}"
    return f"[UNEXPECTED] {error}"


def retry_io(
    func: Callable[[], T],
    attempts: int = 3,
    backoff_seconds: float = 0.05,
    description: str = "I/O operation",
    **context: Any,
) -> T:
    """Run ``func`` retrying transient ``OSError`` with exponential backoff.

    ``SnapshotError`` subclasses propagate immediately: they describe missing
    or corrupt content, which retrying cannot fix. ``FileNotFoundError`` is
    treated the same way.

    Raises:
        IOFailure: when every attempt raised ``OSError``.
    """
    attempts = max(1, attempts)
    delay = backoff_seconds
    last_error: OSError | None = None

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except FileNotFoundError:
            raise
        except OSError as e:
            last_error = e
            if attempt == attempts:
                break
            logger.debug(f"{description} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.3f}s")
            time.sleep(delay)
            delay *= 2

    raise IOFailure(f"{description} failed after {attempts} attempts: {last_error}", **context) from last_error
