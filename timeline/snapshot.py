"""Snapshot writer: capture the working tree without touching the index.

Builds one immutable snapshot commit from the current working-tree bytes
using only object-creation plumbing (see ``timeline.git``):

1. resolve the branch head
2. enumerate tracked and untracked (non-ignored) paths
3. write a blob per file straight from disk
4. build nested trees bottom-up with ``mktree``; directories whose content
   matches the head are reused instead of rewritten
5. stop if the root tree equals the head's tree, or the tree of the newest
   snapshot already taken on top of that head (no-op)
6. ``commit-tree`` with the head as sole parent
7. attach the metadata note
8. publish a uniquely named reference

The note is written before the reference so a snapshot is only ever visible
with its metadata. Backend failures propagate; this module never retries.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from timeline import git
from timeline.config import TimelineConfig
from timeline.errors import GitCommandError, ReferenceConflict
from timeline.lock_guard import CaptureState
from timeline.refs import SnapshotRef, line_prefix, next_suffix, ref_name

logger = logging.getLogger(__name__)

CONTROL_DIR = ".git"


@dataclass(frozen=True)
class SnapshotMetadata:
    """Out-of-band data attached once per snapshot as a git note."""

    session_id: str | None = None
    timestamp: str = ""
    branch: str = ""
    tool: str | None = None
    files: tuple[str, ...] = ()
    project_path: str = ""
    requested_at: str | None = None  # Set when the capture came from the deferred queue

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the note's JSON keys."""
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "branch": self.branch,
            "tool": self.tool,
            "files": list(self.files) if self.files else None,
            "projectPath": self.project_path,
            "requestedAt": self.requested_at,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotMetadata:
        files = data.get("files") or ()
        if isinstance(files, str):
            files = (files,)
        return cls(
            session_id=data.get("sessionId"),
            timestamp=data.get("timestamp", ""),
            branch=data.get("branch", ""),
            tool=data.get("tool"),
            files=tuple(files),
            project_path=data.get("projectPath", ""),
            requested_at=data.get("requestedAt"),
        )


@dataclass(frozen=True)
class CaptureResult:
    """Result of one capture attempt."""

    state: CaptureState
    commit: str | None = None
    reference: str | None = None
    parent: str | None = None
    tree: str | None = None

    @property
    def created(self) -> bool:
        return self.state is CaptureState.COMMITTED


@dataclass
class _HeadListing:
    """The head commit's trees, keyed by directory path ("" is the root)."""

    trees: dict[str, str] = field(default_factory=dict)
    children: dict[str, dict[str, tuple[str, str]]] = field(default_factory=dict)


class SnapshotWriter:
    """Creates snapshot commits for one workspace."""

    def __init__(self, workspace: Path, config: TimelineConfig):
        self.workspace = Path(workspace)
        self.config = config

    def capture(
        self,
        line_of_work: str | None = None,
        metadata: SnapshotMetadata | None = None,
        force: bool = False,
    ) -> CaptureResult:
        """Snapshot the working tree if it differs from the branch head.

        A capture is also a no-op when the newest snapshot taken on top of
        the same head already holds this exact tree, so repeated captures of
        an unchanged (but dirty) workspace publish nothing new.

        Args:
            line_of_work: Branch to scope the reference under (default: current)
            metadata: Note to attach; timestamp/branch/project path are filled in
            force: Publish a reference even when nothing changed (travel's safety snapshot)

        Returns:
            CaptureResult in state COMMITTED or NOOP

        Raises:
            GitCommandError: a backend primitive failed
            ReferenceConflict: the generated reference name already existed
        """
        head = git.get_head(self.workspace)
        branch = line_of_work or git.get_branch(self.workspace)

        tree = self.build_tree(head)
        head_tree = git.get_tree(head, self.workspace) if head else git.EMPTY_TREE
        if not force:
            if tree == head_tree:
                logger.debug(f"Workspace matches {branch} head, nothing to snapshot")
                return CaptureResult(CaptureState.NOOP, parent=head, tree=tree)
            if tree == self._latest_snapshot_tree(branch, head):
                logger.debug(f"Workspace matches the latest {branch} snapshot, nothing to snapshot")
                return CaptureResult(CaptureState.NOOP, parent=head, tree=tree)

        now = datetime.now(UTC)
        message = f"Timeline snapshot at {now.isoformat(timespec='milliseconds')}"
        commit = git.commit_tree(tree, message, parent=head, path=self.workspace)

        note = self._complete_metadata(metadata, branch, now)
        git.add_note(self.config.notes_ref, commit, json.dumps(note.to_dict()), path=self.workspace)

        reference = ref_name(self.config.ref_namespace, branch, next_suffix())
        try:
            git.create_ref(reference, commit, path=self.workspace)
        except GitCommandError as e:
            if "exists" in e.stderr:
                raise ReferenceConflict(
                    f"Snapshot reference already exists: {reference}",
                    context={"reference": reference, "commit": commit},
                ) from e
            raise

        logger.debug(f"Created snapshot {commit[:7]} at {reference}")
        return CaptureResult(
            CaptureState.COMMITTED,
            commit=commit,
            reference=reference,
            parent=head,
            tree=tree,
        )

    def _latest_snapshot_tree(self, branch: str, head: str | None) -> str | None:
        """Tree of the newest snapshot on ``branch`` whose parent is ``head``."""
        lines = git.for_each_ref(
            line_prefix(self.config.ref_namespace, branch),
            "%(refname)%00%(parent)%00%(tree)",
            path=self.workspace,
        )
        newest: tuple[int, str] | None = None
        for line in lines:
            name, _, rest = line.partition("\0")
            parent, _, tree = rest.partition("\0")
            ref = SnapshotRef.parse(name, self.config.ref_namespace)
            if ref is None or ref.line_of_work != branch or (parent or None) != head:
                continue
            if newest is None or ref.suffix > newest[0]:
                newest = (ref.suffix, tree)
        return newest[1] if newest else None

    def _complete_metadata(
        self,
        metadata: SnapshotMetadata | None,
        branch: str,
        now: datetime,
    ) -> SnapshotMetadata:
        base = metadata or SnapshotMetadata()
        return SnapshotMetadata(
            session_id=base.session_id,
            timestamp=base.timestamp or now.isoformat(),
            branch=base.branch or branch,
            tool=base.tool,
            files=base.files,
            project_path=base.project_path or str(self.workspace),
            requested_at=base.requested_at,
        )

    # ------------------------------------------------------------------
    # Tree construction
    # ------------------------------------------------------------------

    def build_tree(self, head: str | None = None) -> str:
        """Write blobs and trees for the current working tree; return the root tree id."""
        entries = self.collect_entries()
        listing = self._head_listing(head) if head else _HeadListing()

        root: dict[str, Any] = {}
        for entry in sorted(entries, key=lambda e: e.path):
            parts = entry.path.split("/")
            node = root
            for part in parts[:-1]:
                child = node.setdefault(part, {})
                if not isinstance(child, dict):
                    # A file and a directory with the same name cannot coexist
                    break
                node = child
            else:
                node[parts[-1]] = entry

        return self._write_tree(root, "", listing)

    def collect_entries(self) -> list[git.TreeEntry]:
        """(mode, blob id, path) for every tracked and untracked file on disk."""
        entries: list[git.TreeEntry] = []
        to_hash: list[tuple[str, str]] = []  # (path, mode)

        trust_exec = git.config_bool("core.fileMode", default=True, path=self.workspace)
        candidates: dict[str, str | None] = {}  # path -> mode recorded in the index
        for tracked in git.list_tracked(self.workspace):
            if tracked.mode == "160000":
                # Submodule: keep the recorded commit
                entries.append(tracked)
                continue
            candidates[tracked.path] = tracked.mode
        for untracked in git.list_untracked(self.workspace):
            candidates.setdefault(untracked, None)

        for rel_path in candidates:
            if rel_path.endswith("/") or _in_control_dir(rel_path):
                continue
            full_path = self.workspace / rel_path
            try:
                st = os.lstat(full_path)
            except (FileNotFoundError, NotADirectoryError):
                # Deleted, or a parent directory became a file: record the deletion
                continue

            if stat.S_ISLNK(st.st_mode):
                target = os.readlink(os.fsencode(full_path))
                oid = git.hash_bytes(target, path=self.workspace)
                entries.append(git.TreeEntry(mode="120000", oid=oid, path=rel_path))
            elif stat.S_ISREG(st.st_mode):
                if trust_exec:
                    mode = "100755" if st.st_mode & stat.S_IXUSR else "100644"
                else:
                    # core.fileMode=false: keep what the index records, as git add would
                    recorded = candidates[rel_path]
                    mode = recorded if recorded in ("100644", "100755") else "100644"
                to_hash.append((rel_path, mode))
            else:
                logger.debug(f"Skipping non-regular path: {rel_path}")

        oids = git.hash_files([p for p, _ in to_hash], path=self.workspace)
        for (rel_path, mode), oid in zip(to_hash, oids):
            entries.append(git.TreeEntry(mode=mode, oid=oid, path=rel_path))
        return entries

    def _write_tree(self, node: dict[str, Any], dir_path: str, listing: _HeadListing) -> str:
        items: list[git.TreeEntry] = []
        for name, child in node.items():
            if isinstance(child, dict):
                sub_path = f"{dir_path}/{name}" if dir_path else name
                oid = self._write_tree(child, sub_path, listing)
                items.append(git.TreeEntry(mode="040000", oid=oid, path=name))
            else:
                items.append(git.TreeEntry(mode=child.mode, oid=child.oid, path=name))

        # Unchanged directory: reuse the head's tree object
        signature = {e.path: (e.mode, e.oid) for e in items}
        if dir_path in listing.trees and listing.children.get(dir_path, {}) == signature:
            return listing.trees[dir_path]

        return git.mktree(items, path=self.workspace)

    def _head_listing(self, head: str) -> _HeadListing:
        listing = _HeadListing()
        root_tree = git.get_tree(head, self.workspace)
        if not root_tree:
            return listing
        listing.trees[""] = root_tree
        listing.children[""] = {}

        for entry in git.list_tree(head, self.workspace):
            parent, _, name = entry.path.rpartition("/")
            listing.children.setdefault(parent, {})[name] = (entry.mode, entry.oid)
            if entry.mode == "040000":
                listing.trees[entry.path] = entry.oid
                listing.children.setdefault(entry.path, {})
        return listing


def _in_control_dir(rel_path: str) -> bool:
    return rel_path == CONTROL_DIR or rel_path.startswith(CONTROL_DIR + "/")
