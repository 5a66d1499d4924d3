"""Restore the working tree to a snapshot.

The target is resolved before anything is written, then the current state
is captured as a safety snapshot, then ``git restore --worktree`` rewrites
the files. Staged content is left as it was, so ``git status`` shows the
restored content as unstaged modifications.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from timeline import git
from timeline.capture import capture_now
from timeline.config import TimelineConfig
from timeline.index import SnapshotInfo, TimelineIndex
from timeline.snapshot import CaptureResult, SnapshotMetadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TravelResult:
    target: SnapshotInfo
    safety: CaptureResult  # Always a new reference, even for an unchanged workspace


class TravelEngine:
    def __init__(
        self,
        workspace: Path,
        config: TimelineConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workspace = Path(workspace)
        self.config = config
        self.index = TimelineIndex(self.workspace, config)
        self._sleep = sleep

    def travel(self, target: str, line_of_work: str | None = None) -> TravelResult:
        """Restore the working tree to ``target`` (ordinal, reference or commit id).

        Raises:
            InvalidTarget: the target does not resolve; nothing was written
            ContentionError: the safety snapshot could not take its turn
            GitCommandError: capture or restore failed
        """
        snapshot = self.index.resolve(target, line_of_work)

        safety = capture_now(
            self.workspace,
            self.config,
            metadata=SnapshotMetadata(tool="travel", project_path=str(self.workspace)),
            sleep=self._sleep,
            force=True,
        )
        logger.info(f"Safety snapshot {safety.commit[:7]} before travel")

        git.restore_worktree(snapshot.commit, path=self.workspace)
        logger.info(f"Restored working tree to {snapshot.name}")
        return TravelResult(target=snapshot, safety=safety)
