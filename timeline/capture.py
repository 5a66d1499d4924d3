"""Capture orchestration: LockGuard -> SnapshotWriter -> DeferredQueue.

Two entry points with different error policies:

- ``save``: the hook path. Never raises. Contention and backend failures
  become queue entries, everything is logged, and the caller always sees
  success.
- ``capture_now``: the interactive path (travel's safety snapshot). Errors
  propagate; contention past the budget raises ContentionError.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import yaml

from timeline import git
from timeline.config import TimelineConfig
from timeline.errors import ContentionError, GitCommandError, RepositoryError, TimelineError
from timeline.hooks import HookPayload, resolve_session_id
from timeline.lock_guard import CaptureState, LockGuard
from timeline.logging import (
    log_capture_committed,
    log_capture_deferred,
    log_capture_failed,
    log_capture_noop,
)
from timeline.queue import DeferredQueue, QueueEntry
from timeline.snapshot import CaptureResult, SnapshotMetadata, SnapshotWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveOutcome:
    """What a hook-triggered save did. ``state`` is never surfaced as an error."""

    state: CaptureState
    result: CaptureResult | None = None
    entry: QueueEntry | None = None  # Set when the request was deferred
    error: str | None = None

    @property
    def deferred(self) -> bool:
        return self.state is CaptureState.DEFERRED


def metadata_from_payload(payload: HookPayload, workspace: Path, projects_dir: Path | None = None) -> SnapshotMetadata:
    project_path = payload.project_path or str(workspace)
    return SnapshotMetadata(
        session_id=resolve_session_id(payload, project_path, projects_dir),
        tool=payload.tool,
        files=payload.files,
        project_path=project_path,
    )


def capture_now(
    workspace: Path,
    config: TimelineConfig,
    metadata: SnapshotMetadata | None = None,
    sleep: Callable[[float], None] = time.sleep,
    force: bool = False,
) -> CaptureResult:
    """Wait for the staging lock, then snapshot. Errors propagate.

    ``force`` publishes a reference even for an unchanged workspace.

    Raises:
        ContentionError: the staging lock stayed held for the whole budget
        GitCommandError: a backend primitive failed
    """
    guard = LockGuard(workspace, config, sleep=sleep)
    outcome = guard.wait()
    if outcome.deferred:
        raise ContentionError(
            f"index.lock still held after {outcome.waited_ms}ms",
            context={"workspace": str(workspace), "waited_ms": outcome.waited_ms},
        )
    return SnapshotWriter(workspace, config).capture(metadata=metadata, force=force)


def save(
    workspace: Path | None = None,
    config: TimelineConfig | None = None,
    payload: HookPayload | None = None,
    sleep: Callable[[float], None] = time.sleep,
    projects_dir: Path | None = None,
) -> SaveOutcome:
    """Hook-safe capture of the current workspace.

    Order of events:

    1. outside a repository: nothing to do (FAILED, nothing queued)
    2. staging lock held past the budget: enqueue (DEFERRED)
    3. snapshot; a backend failure is enqueued for retry (DEFERRED)
    4. opportunistically drain the queue with a zero wait budget

    Never raises.
    """
    if config is None:
        try:
            config = TimelineConfig.load()
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable config, using defaults: {e}")
            config = TimelineConfig()
    payload = payload or HookPayload()
    start = Path(workspace or payload.project_path or Path.cwd())

    try:
        root = git.require_repo(start)
    except RepositoryError as e:
        logger.debug(f"Skipping save: {e.message}")
        return SaveOutcome(CaptureState.FAILED, error=e.message)

    try:
        metadata = metadata_from_payload(payload, root, projects_dir)
    except OSError as e:
        logger.debug(f"Session lookup failed: {e}")
        metadata = SnapshotMetadata(project_path=str(root))

    outcome = _capture_or_defer(root, config, metadata, sleep)

    if config.drain_on_save and outcome.state is not CaptureState.DEFERRED:
        _drain_quietly(config, sleep)
    return outcome


def _capture_or_defer(
    root: Path,
    config: TimelineConfig,
    metadata: SnapshotMetadata,
    sleep: Callable[[float], None],
) -> SaveOutcome:
    guard = LockGuard(root, config, sleep=sleep)
    waited = guard.wait()
    if waited.deferred:
        log_capture_deferred(str(root), waited.waited_ms)
        return _defer(root, config, metadata, "index locked")

    try:
        result = SnapshotWriter(root, config).capture(metadata=metadata)
    except GitCommandError as e:
        if e.is_lock_contention:
            log_capture_deferred(str(root), waited.waited_ms, "lock taken during capture")
        else:
            log_capture_failed(str(root), e)
        return _defer(root, config, metadata, e.message)
    except (TimelineError, OSError) as e:
        log_capture_failed(str(root), e)
        return _defer(root, config, metadata, str(e))

    if result.created:
        log_capture_committed(str(root), result.reference or "", result.commit or "")
    else:
        log_capture_noop(str(root))
    return SaveOutcome(result.state, result=result)


def _defer(root: Path, config: TimelineConfig, metadata: SnapshotMetadata, reason: str) -> SaveOutcome:
    entry = QueueEntry(
        requested_at=int(time.time() * 1000),
        workspace_path=str(root),
        line_of_work=git.get_branch(root),
        correlation_id=metadata.session_id,
    )
    try:
        DeferredQueue(config).enqueue(entry)
    except OSError as e:
        # Nowhere left to put the request; the log is the last record of it
        logger.error(f"Lost capture request for {root}: {e}")
        return SaveOutcome(CaptureState.FAILED, error=str(e))
    return SaveOutcome(CaptureState.DEFERRED, entry=entry, error=reason)


def _drain_quietly(config: TimelineConfig, sleep: Callable[[float], None]) -> None:
    queue = DeferredQueue(config, sleep=sleep)
    if not config.queue_file.exists():
        return
    try:
        queue.drain(wait_budget_ms=0)
    except (TimelineError, OSError) as e:
        logger.warning(f"Opportunistic queue drain failed: {e}")
