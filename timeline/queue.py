"""Deferred capture queue.

When LockGuard's wait budget runs out, the capture request is appended to a
JSON Lines log instead of blocking the caller. ``drain`` replays the log
later, at least once per entry:

- one advisory lock file (a millisecond timestamp) keeps concurrent drains
  from duplicating work; it is reclaimed once older than
  ``stale_lock_seconds`` so a crashed drain cannot wedge the queue
- entries for the same workspace are coalesced: one capture reflects the
  latest state and satisfies every request made before it
- failures increment ``retryCount``; at ``max_retries`` an entry moves to
  the dead-letter log and is logged, never silently dropped
- malformed lines are copied verbatim to the dead-letter log and skipped
- the log is rewritten atomically at the end, keeping lines that other
  processes appended while the drain ran; a crash before that point leaves
  every entry in place for the next run

Exclusivity is an optimisation only. Capturing twice is harmless: the
second capture of an unchanged workspace matches the newest snapshot on top
of the same head and is a no-op.

A drain with a zero wait budget (the hook's opportunistic drain) only
checks the staging lock; a workspace still locked then keeps its entries
without spending a retry.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

from timeline import git
from timeline.atomic import append_jsonl, atomic_write_jsonl, atomic_write_text
from timeline.config import TimelineConfig
from timeline.errors import QueueCorruption, RepositoryError, TimelineError
from timeline.lock_guard import CaptureState, LockGuard
from timeline.logging import log_dead_letter, log_drain_summary
from timeline.snapshot import SnapshotMetadata, SnapshotWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueEntry:
    """A persisted, retryable capture request."""

    requested_at: int  # Epoch milliseconds
    workspace_path: str
    line_of_work: str
    correlation_id: str | None = None
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestedAt": self.requested_at,
            "workspacePath": self.workspace_path,
            "lineOfWork": self.line_of_work,
            "correlationId": self.correlation_id,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Any) -> QueueEntry:
        """Parse one log record.

        Raises:
            QueueCorruption: the record is not a valid entry
        """
        if not isinstance(data, dict):
            raise QueueCorruption("Queue record is not an object", context={"record": data})
        workspace = data.get("workspacePath")
        requested_at = data.get("requestedAt")
        retry_count = data.get("retryCount", 0)
        if not isinstance(workspace, str) or not workspace:
            raise QueueCorruption("Queue record has no workspacePath", context={"record": data})
        if not isinstance(requested_at, (int, float)) or isinstance(requested_at, bool):
            raise QueueCorruption("Queue record has no numeric requestedAt", context={"record": data})
        if not isinstance(retry_count, int) or isinstance(retry_count, bool) or retry_count < 0:
            raise QueueCorruption("Queue record has an invalid retryCount", context={"record": data})
        correlation_id = data.get("correlationId")
        return cls(
            requested_at=int(requested_at),
            workspace_path=workspace,
            line_of_work=str(data.get("lineOfWork") or ""),
            correlation_id=str(correlation_id) if correlation_id is not None else None,
            retry_count=retry_count,
        )

    def retried(self) -> QueueEntry:
        return QueueEntry(
            requested_at=self.requested_at,
            workspace_path=self.workspace_path,
            line_of_work=self.line_of_work,
            correlation_id=self.correlation_id,
            retry_count=self.retry_count + 1,
        )


@dataclass(frozen=True)
class DrainReport:
    """What one ``drain`` call did."""

    skipped: bool = False  # Another drain held the lock
    captured: int = 0  # Entries satisfied (snapshot created or workspace unchanged)
    retained: int = 0  # Entries kept for another attempt
    dead_lettered: int = 0
    corrupt: int = 0


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    dead_lettered: int
    lock_held: bool
    lock_age_seconds: float | None = None


# Processes every entry of one workspace; returns COMMITTED, NOOP or DEFERRED
GroupProcessor = Callable[[Path, list[QueueEntry], "int | None"], CaptureState]


class DeferredQueue:
    """Durable retry log for capture requests."""

    def __init__(
        self,
        config: TimelineConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        processor: GroupProcessor | None = None,
    ):
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._processor = processor or self._capture_group

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def enqueue(self, entry: QueueEntry) -> None:
        """Append one request to the log. Existing lines are never rewritten.

        Raises:
            OSError: the state directory or log could not be written
        """
        result = append_jsonl(self.config.queue_file, entry.to_dict())
        if result.is_err():
            raise OSError(f"Failed to enqueue capture: {result.unwrap_err().message}")
        logger.debug(f"Queued capture for {entry.workspace_path}")

    def _dead_letter(self, record: dict[str, Any] | str, reason: str) -> None:
        if isinstance(record, str):
            payload: dict[str, Any] = {"raw": record}
        else:
            payload = dict(record)
        payload["reason"] = reason
        payload["deadLetteredAt"] = datetime.now(UTC).isoformat()
        log_dead_letter(payload, reason)
        result = append_jsonl(self.config.dead_letter_file, payload)
        if result.is_err():
            # Still visible through the warning above
            logger.error(f"Failed to write dead-letter record: {result.unwrap_err().message}")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _read_log(self) -> tuple[bytes, list[QueueEntry], list[str]]:
        """Raw log bytes, parsed entries, and corrupt lines."""
        try:
            raw = self.config.queue_file.read_bytes()
        except FileNotFoundError:
            return b"", [], []

        entries: list[QueueEntry] = []
        corrupt: list[str] = []
        for line in _complete_lines(raw):
            try:
                entries.append(QueueEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, UnicodeDecodeError, QueueCorruption) as e:
                logger.warning(f"Skipping corrupt queue record: {e}")
                corrupt.append(line)
        return raw, entries, corrupt

    def pending(self) -> list[QueueEntry]:
        """Entries currently waiting in the log (corrupt lines excluded)."""
        return self._read_log()[1]

    def status(self) -> QueueStatus:
        pending = len(self.pending())
        dead = 0
        if self.config.dead_letter_file.exists():
            dead = len(_complete_lines(self.config.dead_letter_file.read_bytes()))
        lock_ts = self._read_lock()
        age = None
        if lock_ts is not None:
            age = max(0.0, self._clock() - lock_ts / 1000)
        return QueueStatus(
            pending=pending,
            dead_lettered=dead,
            lock_held=lock_ts is not None and age is not None and age <= self.config.stale_lock_seconds,
            lock_age_seconds=age,
        )

    # ------------------------------------------------------------------
    # Advisory processor lock
    # ------------------------------------------------------------------

    def _read_lock(self) -> int | None:
        try:
            content = self.config.lock_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError:
            return 0
        try:
            return int(content)
        except ValueError:
            # Unreadable lock counts as abandoned
            return 0

    def _acquire_lock(self) -> str | None:
        """Take the drain lock; return its token, or None if another drain holds it."""
        token = str(int(self._clock() * 1000))
        lock_file = self.config.lock_file
        lock_file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        try:
            fd = os.open(lock_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            held_since = self._read_lock()
            if held_since is None:
                # Released between our open and read; let the next drain run
                return None
            age = self._clock() - held_since / 1000
            if age <= self.config.stale_lock_seconds:
                logger.debug(f"Queue drain already running ({age:.1f}s)")
                return None
            logger.warning(f"Reclaiming stale queue lock ({age:.1f}s old)")
            result = atomic_write_text(lock_file, token)
            if result.is_err():
                return None
            # Another process may have reclaimed at the same moment
            return token if self._read_lock() == int(token) else None

        with os.fdopen(fd, "w") as f:
            f.write(token)
        return token

    def _release_lock(self, token: str) -> None:
        try:
            if self.config.lock_file.read_text().strip() == token:
                self.config.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to release queue lock: {e}")

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def drain(self, wait_budget_ms: int | None = None) -> DrainReport:
        """Replay queued captures once.

        Args:
            wait_budget_ms: LockGuard budget per workspace (default: config)

        Returns:
            DrainReport; ``skipped`` when another drain holds the lock
        """
        if not self.config.queue_file.exists():
            return DrainReport()

        token = self._acquire_lock()
        if token is None:
            return DrainReport(skipped=True)

        try:
            return self._drain_locked(wait_budget_ms)
        finally:
            self._release_lock(token)

    def run_daemon(self, interval_seconds: float = 5.0, max_runs: int | None = None) -> int:
        """Drain, sleep ``interval_seconds``, repeat.

        A failed drain is logged and the loop carries on. Runs until
        interrupted, or ``max_runs`` drains when given.

        Returns:
            Number of drains attempted
        """
        logger.info(f"Queue daemon started (every {interval_seconds}s)")
        runs = 0
        while max_runs is None or runs < max_runs:
            try:
                self.drain()
            except (TimelineError, OSError) as e:
                logger.error(f"Queue processing error: {e}")
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            self._sleep(interval_seconds)
        return runs

    def _drain_locked(self, wait_budget_ms: int | None) -> DrainReport:
        raw, entries, corrupt = self._read_log()
        for line in corrupt:
            self._dead_letter(line, "corrupt queue record")

        groups: dict[str, list[QueueEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.workspace_path, []).append(entry)

        survivors: list[QueueEntry] = []
        captured = dead_lettered = 0
        for workspace, group in groups.items():
            try:
                state = self._processor(Path(workspace), group, wait_budget_ms)
            except RepositoryError as e:
                for entry in group:
                    self._dead_letter(entry.to_dict(), e.message)
                dead_lettered += len(group)
                continue
            except (TimelineError, OSError) as e:
                logger.warning(f"Queued capture failed for {workspace}: {e}")
                state = CaptureState.FAILED

            if state in (CaptureState.COMMITTED, CaptureState.NOOP):
                captured += len(group)
                continue
            if state is CaptureState.DEFERRED and wait_budget_ms == 0:
                # Never actually waited: not an attempt
                survivors.extend(group)
                continue

            for entry in group:
                retried = entry.retried()
                if retried.retry_count >= self.config.max_retries:
                    self._dead_letter(retried.to_dict(), f"gave up after {retried.retry_count} attempts")
                    dead_lettered += 1
                else:
                    survivors.append(retried)

        self._rewrite_log(raw, survivors)
        log_drain_summary(captured, len(survivors), dead_lettered, len(corrupt))
        return DrainReport(
            captured=captured,
            retained=len(survivors),
            dead_lettered=dead_lettered,
            corrupt=len(corrupt),
        )

    def _rewrite_log(self, consumed: bytes, survivors: list[QueueEntry]) -> None:
        """Replace the log with survivors plus anything appended since ``consumed`` was read."""
        queue_file = self.config.queue_file
        try:
            current = queue_file.read_bytes()
        except FileNotFoundError:
            current = b""

        # Lines appended by concurrent enqueue calls while this drain ran
        appended = current[len(consumed):] if current.startswith(consumed) else b""
        # A partial trailing line in the consumed snapshot belongs to the tail
        partial = consumed[len(b"".join(_split_complete(consumed))):]
        tail_lines = _complete_lines(partial + appended)

        records: list[dict[str, Any] | str] = [e.to_dict() for e in survivors]
        records.extend(tail_lines)
        if not records:
            queue_file.unlink(missing_ok=True)
            return

        result = atomic_write_jsonl(queue_file, records)
        if result.is_err():
            raise OSError(f"Failed to rewrite queue: {result.unwrap_err().message}")

    # ------------------------------------------------------------------
    # Default processor
    # ------------------------------------------------------------------

    def _capture_group(
        self,
        workspace: Path,
        entries: list[QueueEntry],
        wait_budget_ms: int | None,
    ) -> CaptureState:
        """LockGuard + SnapshotWriter for one workspace's queued requests."""
        if not workspace.is_dir() or not git.is_git_repo(workspace):
            raise RepositoryError(
                f"Workspace is no longer a git working tree: {workspace}",
                context={"path": str(workspace)},
            )

        guard = LockGuard(workspace, self.config, sleep=self._sleep)
        if guard.wait(wait_budget_ms).deferred:
            return CaptureState.DEFERRED

        earliest = min(entries, key=lambda e: e.requested_at)
        latest = max(entries, key=lambda e: e.requested_at)
        metadata = SnapshotMetadata(
            session_id=latest.correlation_id,
            project_path=str(workspace),
            requested_at=datetime.fromtimestamp(earliest.requested_at / 1000, UTC).isoformat(),
        )
        # Snapshot under the branch checked out now; the head is its parent
        result = SnapshotWriter(workspace, self.config).capture(metadata=metadata)
        return result.state


def _split_complete(raw: bytes) -> list[bytes]:
    """Newline-terminated chunks of ``raw`` (a trailing partial line is dropped)."""
    chunks = raw.split(b"\n")
    return [chunk + b"\n" for chunk in chunks[:-1]]


def _complete_lines(raw: bytes) -> list[str]:
    """Non-empty, newline-terminated lines decoded as UTF-8."""
    lines = []
    for chunk in _split_complete(raw):
        text = chunk.decode("utf-8", errors="replace").strip()
        if text:
            lines.append(text)
    return lines
