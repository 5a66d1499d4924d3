"""Error taxonomy and Result type for Timeline.

Two styles live side by side:

- Exceptions (``TimelineError`` subclasses) for the snapshot engine.
  Interactive commands let them propagate to the CLI, which prints them and
  exits 1. Hook-triggered captures catch and log them.
- ``Result[T, TimelineError]`` for the atomic file layer, where callers
  decide whether a failed write is fatal.

Every error carries a stable ``code``, a human ``message`` and a ``context``
dict for logging.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class TimelineError(Exception):
    """Base class for all Timeline errors."""

    code = "TIMELINE_ERROR"

    def __init__(self, message: str, code: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ContentionError(TimelineError):
    """git's index is held by another process.

    Expected condition: triggers backoff and then deferral, never surfaced
    to the user as a failure.
    """

    code = "CONTENTION"


class RepositoryError(TimelineError):
    """Invoked outside a git working tree."""

    code = "NOT_A_REPOSITORY"


class ReferenceConflict(TimelineError):
    """A snapshot reference name already exists.

    Names are unique by construction, so seeing this means a bug.
    """

    code = "REFERENCE_CONFLICT"


class InvalidTarget(TimelineError):
    """Travel ordinal out of range or identifier that does not resolve."""

    code = "INVALID_TARGET"


class QueueCorruption(TimelineError):
    """A malformed record in the deferred queue log."""

    code = "QUEUE_CORRUPTION"


class GitCommandError(TimelineError):
    """A git primitive exited non-zero or could not be run."""

    code = "GIT_COMMAND_FAILED"

    def __init__(self, args: list[str], stderr: str = "", returncode: int | None = None):
        command = " ".join(args)
        super().__init__(
            f"git {command} failed: {stderr or 'no output'}",
            context={"args": args, "stderr": stderr, "returncode": returncode},
        )
        self.args_list = args
        self.stderr = stderr
        self.returncode = returncode

    @property
    def is_lock_contention(self) -> bool:
        """True when git refused because the index (or a ref) is locked."""
        return "index.lock" in self.stderr or "Another git process" in self.stderr


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def error(self) -> None:
        return None

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on Ok")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E
    value: None = field(default=None, init=False)

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        if isinstance(self.error, BaseException):
            raise self.error
        raise ValueError(f"Called unwrap() on Err: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def format_error(error: TimelineError | BaseException | None) -> str:
    """Format an error for display on the terminal."""
    if error is None:
        return "Unknown error"
    if isinstance(error, TimelineError):
        return f"{error.message} [{error.code}]"
    return str(error)
