"""Timeline index: the read path over snapshot references.

Snapshots are enumerated with a single ``for-each-ref`` call and ordered by
the numeric suffix embedded in the reference name, never by file or commit
timestamps. Metadata notes and diff statistics are fetched only when asked
for, since each costs one git process per snapshot.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path

from timeline import git
from timeline.config import TimelineConfig
from timeline.errors import InvalidTarget
from timeline.refs import SnapshotRef, line_prefix
from timeline.snapshot import SnapshotMetadata

logger = logging.getLogger(__name__)

_REF_FORMAT = "%(refname)%00%(objectname)%00%(creatordate:iso-strict)%00%(subject)"


@dataclass(frozen=True)
class SnapshotInfo:
    """One snapshot as shown to users."""

    commit: str
    reference: SnapshotRef | None = None  # None for a plain commit resolved by id
    created: str = ""  # ISO 8601 commit date
    subject: str = ""
    metadata: SnapshotMetadata | None = None
    diff: git.DiffStats | None = None

    @property
    def line_of_work(self) -> str | None:
        return self.reference.line_of_work if self.reference else None

    @property
    def name(self) -> str:
        """Reference name for display, or the commit id."""
        return self.reference.short_name if self.reference else self.commit

    def to_dict(self) -> dict:
        data = {
            "commit": self.commit,
            "reference": self.reference.name if self.reference else None,
            "lineOfWork": self.line_of_work,
            "created": self.created,
            "subject": self.subject,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        if self.diff is not None:
            data["diff"] = self.diff.to_dict()
        return data


@dataclass
class SessionGroup:
    """Snapshots that share a session id."""

    session_id: str
    project_path: str = ""
    snapshots: list[SnapshotInfo] = field(default_factory=list)

    @property
    def latest(self) -> SnapshotInfo | None:
        return self.snapshots[0] if self.snapshots else None


class TimelineIndex:
    """Enumerates and decorates the snapshots of one repository."""

    def __init__(self, workspace: Path, config: TimelineConfig):
        self.workspace = Path(workspace)
        self.config = config

    def list(
        self,
        line_of_work: str | None = None,
        session_id: str | None = None,
        with_metadata: bool = False,
    ) -> list[SnapshotInfo]:
        """Snapshots of one line of work (default: current), newest first.

        Args:
            line_of_work: Branch token; "HEAD" for detached snapshots
            session_id: Keep only snapshots whose note names this session
            with_metadata: Attach each snapshot's metadata note
        """
        line_of_work = line_of_work or git.get_branch(self.workspace)
        prefix = line_prefix(self.config.ref_namespace, line_of_work)
        # The prefix also matches nested lines of work ("feature" vs "feature/auth")
        snapshots = [s for s in self._scan(prefix) if s.line_of_work == line_of_work]
        return self._decorate(snapshots, session_id, with_metadata)

    def list_all(self, session_id: str | None = None, with_metadata: bool = False) -> list[SnapshotInfo]:
        """Snapshots across every line of work, newest first."""
        snapshots = self._scan(self.config.ref_namespace.rstrip("/") + "/")
        return self._decorate(snapshots, session_id, with_metadata)

    def lines_of_work(self) -> list[str]:
        return sorted({s.line_of_work for s in self.list_all() if s.line_of_work})

    def metadata(self, commit: str) -> SnapshotMetadata | None:
        """The snapshot's metadata note, or None if missing or unreadable."""
        raw = git.show_note(self.config.notes_ref, commit, path=self.workspace)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring malformed metadata note on {commit[:7]}")
            return None
        if not isinstance(data, dict):
            return None
        return SnapshotMetadata.from_dict(data)

    def resolve(self, target: str, line_of_work: str | None = None) -> SnapshotInfo:
        """Resolve a 1-based ordinal, a reference name, or a commit id.

        Ordinals count over ``list(line_of_work)``, newest first.

        Raises:
            InvalidTarget: out-of-range ordinal or unresolvable id
        """
        target = target.strip()
        if not target:
            raise InvalidTarget("No snapshot given")

        if target.isdigit():
            snapshots = self.list(line_of_work)
            index = int(target)
            if not 1 <= index <= len(snapshots):
                raise InvalidTarget(
                    f"Snapshot {index} out of range (have {len(snapshots)})",
                    context={"target": target, "count": len(snapshots)},
                )
            return snapshots[index - 1]

        all_snapshots = self.list_all()
        for snapshot in all_snapshots:
            ref = snapshot.reference
            if ref and target in (ref.name, ref.short_name):
                return snapshot

        commit = git.resolve_commit(target, self.workspace)
        if not commit:
            raise InvalidTarget(f"Unknown snapshot: {target}", context={"target": target})
        for snapshot in all_snapshots:
            if snapshot.commit == commit:
                return snapshot

        created, subject = git.commit_info(commit, self.workspace) or ("", "")
        return SnapshotInfo(commit=commit, created=created, subject=subject)

    def detail(self, target: str | SnapshotInfo) -> SnapshotInfo:
        """Snapshot with metadata and diff statistics against the current head."""
        snapshot = target if isinstance(target, SnapshotInfo) else self.resolve(target)
        head = git.get_head(self.workspace)
        diff = git.diff_stats(head or git.EMPTY_TREE, snapshot.commit, path=self.workspace)
        return replace(snapshot, metadata=self.metadata(snapshot.commit), diff=diff)

    def group_by_session(self) -> list[SessionGroup]:
        """Every snapshot grouped by session id; most recently active session first.

        Snapshots without a note fall under the session id "unknown".
        """
        groups: dict[str, SessionGroup] = {}
        for snapshot in self.list_all(with_metadata=True):
            meta = snapshot.metadata
            session_id = (meta.session_id if meta else None) or "unknown"
            group = groups.get(session_id)
            if group is None:
                group = groups[session_id] = SessionGroup(
                    session_id=session_id,
                    project_path=meta.project_path if meta else "",
                )
            group.snapshots.append(snapshot)
        return list(groups.values())

    # ------------------------------------------------------------------

    def _scan(self, prefix: str) -> list[SnapshotInfo]:
        snapshots = []
        for line in git.for_each_ref(prefix, _REF_FORMAT, path=self.workspace):
            name, commit, created, subject = (line.split("\0") + ["", "", ""])[:4]
            ref = SnapshotRef.parse(name, self.config.ref_namespace)
            if ref is None:
                continue
            snapshots.append(SnapshotInfo(commit=commit, reference=ref, created=created, subject=subject))
        # Highest suffix first; suffixes are unique per reference
        snapshots.sort(key=lambda s: s.reference.suffix, reverse=True)
        return snapshots

    def _decorate(
        self,
        snapshots: list[SnapshotInfo],
        session_id: str | None,
        with_metadata: bool,
    ) -> list[SnapshotInfo]:
        if not (with_metadata or session_id):
            return snapshots
        decorated = []
        for snapshot in snapshots:
            meta = self.metadata(snapshot.commit)
            if session_id and (meta is None or meta.session_id != session_id):
                continue
            decorated.append(replace(snapshot, metadata=meta) if with_metadata else snapshot)
        return decorated
