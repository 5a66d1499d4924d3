"""Bounded wait for git's staging structure.

The capture path never touches ``.git/index``, but a user's ``git commit``
or an editor's background ``git status`` holding ``index.lock`` is the
signal that the repository is busy. LockGuard polls for that marker with
exponential backoff and gives up after a fixed budget, handing the request
to the deferred queue instead of making the caller wait.

The guard is a small state machine::

    IDLE -> READY                       marker absent
    IDLE -> WAITING(0) -> ... -> READY  marker cleared during backoff
    IDLE -> WAITING(0) -> ... -> DEFERRED  budget exhausted

Each wait is a pure function of the attempt number and ``sleep`` is
injected, so timing is deterministic in tests.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from timeline import git
from timeline.config import TimelineConfig

logger = logging.getLogger(__name__)


class CaptureState(enum.Enum):
    """Where a capture request ended up."""

    IDLE = "idle"
    WAITING = "waiting"
    READY = "ready"
    DEFERRED = "deferred"
    COMMITTED = "committed"
    NOOP = "noop"
    FAILED = "failed"


def backoff_delay(attempt: int, base_ms: int = 50, cap_ms: int = 1000) -> int:
    """Milliseconds to wait before poll ``attempt`` (0-based): base * 2**attempt, capped."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    # Avoid computing huge powers once the cap is reached
    if attempt >= 32:
        return cap_ms
    return min(base_ms * (2**attempt), cap_ms)


@dataclass(frozen=True)
class GuardResult:
    """Outcome of one ``LockGuard.wait`` call."""

    state: CaptureState  # READY or DEFERRED
    attempts: int = 0
    waited_ms: int = 0
    delays_ms: tuple[int, ...] = ()

    @property
    def ready(self) -> bool:
        return self.state is CaptureState.READY

    @property
    def deferred(self) -> bool:
        return self.state is CaptureState.DEFERRED


class LockGuard:
    """Polls for ``index.lock`` in one workspace."""

    def __init__(
        self,
        workspace: Path,
        config: TimelineConfig,
        sleep: Callable[[float], None] = time.sleep,
        lock_path: Path | None = None,
    ):
        self.workspace = Path(workspace)
        self.config = config
        self._sleep = sleep
        self._lock_path = lock_path
        self.state = CaptureState.IDLE

    @property
    def lock_path(self) -> Path | None:
        if self._lock_path is None:
            self._lock_path = git.index_lock_path(self.workspace)
        return self._lock_path

    def is_contended(self) -> bool:
        """True while another process holds the staging lock."""
        lock_path = self.lock_path
        if lock_path is None:
            return False
        try:
            return lock_path.exists()
        except OSError:
            return False

    def wait(self, max_wait_ms: int | None = None) -> GuardResult:
        """Wait until the staging lock is free or the budget runs out.

        Never raises: contention is an expected condition.

        Args:
            max_wait_ms: Cumulative wait budget; defaults to ``config.wait_budget_ms``

        Returns:
            GuardResult with state READY or DEFERRED
        """
        budget = self.config.wait_budget_ms if max_wait_ms is None else max_wait_ms

        if not self.is_contended():
            self.state = CaptureState.READY
            return GuardResult(CaptureState.READY)

        waited = 0
        attempt = 0
        delays: list[int] = []
        while True:
            remaining = budget - waited
            if remaining <= 0:
                self.state = CaptureState.DEFERRED
                logger.debug(f"index.lock still held after {waited}ms in {self.workspace}")
                return GuardResult(CaptureState.DEFERRED, attempt, waited, tuple(delays))

            self.state = CaptureState.WAITING
            delay = min(
                backoff_delay(attempt, self.config.backoff_base_ms, self.config.backoff_cap_ms),
                remaining,
            )
            self._sleep(delay / 1000)
            delays.append(delay)
            waited += delay
            attempt += 1

            if not self.is_contended():
                self.state = CaptureState.READY
                return GuardResult(CaptureState.READY, attempt, waited, tuple(delays))
