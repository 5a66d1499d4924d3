"""Pattern search across the snapshots of one line of work."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from timeline import git
from timeline.config import TimelineConfig
from timeline.index import SnapshotInfo, TimelineIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchMatch:
    """Everything that matched in one snapshot."""

    snapshot: SnapshotInfo
    lines: tuple[str, ...] = ()  # "path:lineno:text"
    paths: tuple[str, ...] = ()  # File names containing the pattern

    @property
    def count(self) -> int:
        return len(self.lines) + len(self.paths)


class SearchEngine:
    def __init__(self, workspace: Path, config: TimelineConfig):
        self.workspace = Path(workspace)
        self.config = config
        self.index = TimelineIndex(self.workspace, config)

    def search(
        self,
        pattern: str,
        ignore_case: bool = False,
        line_of_work: str | None = None,
    ) -> list[SearchMatch]:
        """One SearchMatch per snapshot with content or file-name hits, newest first.

        Content uses ``git grep`` regex syntax; file names are a substring match.
        An empty list means nothing matched.
        """
        if not pattern:
            raise ValueError("Search pattern must not be empty")

        needle = pattern.lower() if ignore_case else pattern
        matches = []
        for snapshot in self.index.list(line_of_work):
            lines = git.grep(pattern, snapshot.commit, path=self.workspace, ignore_case=ignore_case)
            paths = [
                p
                for p in git.list_tree_paths(snapshot.commit, path=self.workspace)
                if needle in (p.lower() if ignore_case else p)
            ]
            if lines or paths:
                matches.append(SearchMatch(snapshot=snapshot, lines=tuple(lines), paths=tuple(paths)))
        logger.debug(f"Search {pattern!r}: {len(matches)} matching snapshots")
        return matches
