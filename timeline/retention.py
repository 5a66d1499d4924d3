"""Retention: orphan detection and snapshot deletion.

A snapshot is orphaned when the branch its reference is scoped under no
longer exists. Detached-HEAD snapshots are scoped under the token "HEAD",
which never names a branch, so they are never treated as orphaned; remove
them with ``delete_line("HEAD")``.

Deleting a reference only unpublishes the snapshot. Objects become
unreachable and ``git gc`` prunes them on its own schedule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from timeline import git
from timeline.config import TimelineConfig
from timeline.errors import GitCommandError, InvalidTarget
from timeline.index import TimelineIndex
from timeline.refs import SnapshotRef

logger = logging.getLogger(__name__)

DETACHED = "HEAD"


@dataclass(frozen=True)
class DeleteReport:
    deleted: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    cancelled: bool = False


class RetentionManager:
    def __init__(self, workspace: Path, config: TimelineConfig):
        self.workspace = Path(workspace)
        self.config = config
        self.index = TimelineIndex(self.workspace, config)

    def find_orphaned(self) -> list[SnapshotRef]:
        """Snapshot references whose line of work has no branch, newest first."""
        orphaned = []
        existing: dict[str, bool] = {}
        for snapshot in self.index.list_all():
            ref = snapshot.reference
            if ref is None or ref.line_of_work == DETACHED:
                continue
            if ref.line_of_work not in existing:
                existing[ref.line_of_work] = git.branch_exists(ref.line_of_work, self.workspace)
            if not existing[ref.line_of_work]:
                orphaned.append(ref)
        return orphaned

    def cleanup(self, confirmed: bool) -> DeleteReport:
        """Delete every orphaned snapshot reference; nothing unless ``confirmed``."""
        if not confirmed:
            return DeleteReport(cancelled=True)
        return self._delete_refs(self.find_orphaned())

    def delete_line(self, line_of_work: str | None, confirmed: bool) -> DeleteReport:
        """Delete every snapshot of one line of work (default: current)."""
        if not confirmed:
            return DeleteReport(cancelled=True)
        refs = [s.reference for s in self.index.list(line_of_work) if s.reference]
        return self._delete_refs(refs)

    def delete(self, target: str) -> str:
        """Delete a single snapshot by ordinal, reference name or commit id.

        Returns:
            The deleted reference name

        Raises:
            InvalidTarget: the target is not a snapshot reference
        """
        snapshot = self.index.resolve(target)
        if snapshot.reference is None:
            raise InvalidTarget(f"Not a snapshot: {target}", context={"target": target})
        git.delete_ref(snapshot.reference.name, path=self.workspace)
        logger.info(f"Deleted snapshot {snapshot.reference.name}")
        return snapshot.reference.name

    def _delete_refs(self, refs: list[SnapshotRef]) -> DeleteReport:
        deleted, failed = [], []
        for ref in refs:
            try:
                git.delete_ref(ref.name, path=self.workspace)
                deleted.append(ref.name)
            except GitCommandError as e:
                logger.warning(f"Failed to delete {ref.name}: {e}")
                failed.append(ref.name)
        if deleted:
            logger.info(f"Deleted {len(deleted)} snapshot reference(s)")
        return DeleteReport(deleted=tuple(deleted), failed=tuple(failed))
