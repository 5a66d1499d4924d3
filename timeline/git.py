"""Git backend primitives for Timeline.

Every git invocation the snapshot engine makes goes through this module.
The capture path only uses plumbing that never reads-for-update or writes
``.git/index``:

- ``hash-object -w``   write a blob straight from working-tree bytes
- ``mktree``           build a tree from explicit entries
- ``commit-tree``      create a commit from a tree and parent
- ``update-ref``       publish a reference
- ``notes add``        attach out-of-band metadata (own notes ref, no index)

``ls-files`` reads the index without taking ``index.lock``. All calls run
with ``GIT_OPTIONAL_LOCKS=0`` so git never takes the lock opportunistically
to refresh stat information.

Two calling conventions, as in the rest of the package:

- ``_run_git`` returns stdout or None; used for probes where "not there" is
  a normal answer (is this a repo, does the ref exist).
- ``_git`` raises ``GitCommandError``; used by the engine, which must see
  backend failures.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from timeline.errors import GitCommandError, RepositoryError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class TreeEntry:
    """One ``mktree`` input line."""

    mode: str  # "100644", "100755", "120000", "160000", "040000"
    oid: str
    path: str  # Full slash-separated path relative to the repo root

    @property
    def object_type(self) -> str:
        if self.mode == "040000":
            return "tree"
        if self.mode == "160000":
            return "commit"
        return "blob"


@dataclass(frozen=True)
class DiffStats:
    """Summary of differences between a snapshot and the branch head."""

    files_changed: int
    insertions: int
    deletions: int
    files: tuple[tuple[str, str], ...] = ()  # (status letter, path)

    @property
    def summary(self) -> str:
        """Human-readable summary like '+142 -67 across 5 files'."""
        if not self.files_changed:
            return "no changes"
        return f"+{self.insertions} -{self.deletions} across {self.files_changed} files"

    def to_dict(self) -> dict:
        """Serialize to dict for storage."""
        return {
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "files": [{"status": status, "path": path} for status, path in self.files],
        }


# =============================================================================
# Git CLI Helpers
# =============================================================================


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_OPTIONAL_LOCKS"] = "0"
    env["LC_ALL"] = "C"
    return env


def _git(
    args: list[str],
    cwd: Path | None = None,
    input: str | bytes | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    ok_codes: tuple[int, ...] = (0,),
) -> subprocess.CompletedProcess:
    """Run a git command, raising GitCommandError on failure.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (defaults to current)
        input: Bytes or text to feed on stdin
        timeout: Seconds before the command is killed
        ok_codes: Exit codes treated as success (``git grep`` uses 1 for "no match")

    Returns:
        The completed process; stdout is text
    """
    data = input.encode("utf-8", errors="surrogateescape") if isinstance(input, str) else input
    stdin_kwargs = {"input": data} if data is not None else {"stdin": subprocess.DEVNULL}
    try:
        # Security: shell=False (default), args are built internally
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            timeout=timeout,
            cwd=cwd,
            env=_git_env(),
            **stdin_kwargs,
        )
    except subprocess.TimeoutExpired as e:
        raise GitCommandError(args, f"timed out after {timeout}s") from e
    except (FileNotFoundError, OSError) as e:
        raise GitCommandError(args, str(e)) from e

    stdout = result.stdout.decode("utf-8", errors="surrogateescape")
    stderr = result.stderr.decode("utf-8", errors="replace").strip()
    if result.returncode not in ok_codes:
        raise GitCommandError(args, stderr, result.returncode)
    return subprocess.CompletedProcess(result.args, result.returncode, stdout, stderr)


def _run_git(args: list[str], cwd: Path | None = None) -> str | None:
    """Run a git command and return stripped stdout, or None on failure."""
    try:
        return _git(args, cwd=cwd).stdout.strip()
    except GitCommandError as e:
        logger.debug(f"Git command failed: {e}")
        return None


def is_git_repo(path: Path | None = None) -> bool:
    """Check if path is inside a git working tree."""
    return _run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"


def require_repo(path: Path | None = None) -> Path:
    """Return the working tree root, or raise RepositoryError."""
    toplevel = _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    if not toplevel:
        raise RepositoryError(
            f"Not a git working tree: {path or Path.cwd()}",
            context={"path": str(path or Path.cwd())},
        )
    return Path(toplevel)


def get_branch(path: Path | None = None) -> str:
    """Get the current line of work.

    Returns:
        Branch name (also for an unborn branch), or "HEAD" if detached
    """
    branch = _run_git(["symbolic-ref", "--short", "-q", "HEAD"], cwd=path)
    return branch or "HEAD"


def get_head(path: Path | None = None) -> str | None:
    """Full SHA of HEAD, or None on an unborn branch."""
    return _run_git(["rev-parse", "--verify", "-q", "HEAD"], cwd=path) or None


def get_tree(rev: str, path: Path | None = None) -> str | None:
    """Tree id of a commit-ish, or None if it does not resolve."""
    return _run_git(["rev-parse", "--verify", "-q", f"{rev}^{{tree}}"], cwd=path) or None


def resolve_commit(target: str, path: Path | None = None) -> str | None:
    """Resolve a (possibly abbreviated) id or ref name to a full commit SHA."""
    if not target or target.startswith("-"):
        return None
    return _run_git(["rev-parse", "--verify", "-q", f"{target}^{{commit}}"], cwd=path) or None


def index_lock_path(path: Path | None = None) -> Path | None:
    """Location of the staging structure's lock file.

    Uses ``--git-path`` so linked worktrees and GIT_DIR overrides resolve
    to the right file.
    """
    lock = _run_git(["rev-parse", "--git-path", "index.lock"], cwd=path)
    if not lock:
        return None
    lock_path = Path(lock)
    if not lock_path.is_absolute():
        lock_path = Path(path or Path.cwd()) / lock_path
    return lock_path


def config_bool(key: str, default: bool, path: Path | None = None) -> bool:
    """A boolean config value, or ``default`` when unset."""
    value = _run_git(["config", "--type=bool", "--get", key], cwd=path)
    if value is None:
        return default
    return value == "true"


def branch_exists(branch: str, path: Path | None = None) -> bool:
    return ref_exists(f"refs/heads/{branch}", path)


def ref_exists(ref: str, path: Path | None = None) -> bool:
    return _run_git(["show-ref", "--verify", "--quiet", ref], cwd=path) is not None


# =============================================================================
# Workspace enumeration
# =============================================================================


def list_tracked(path: Path | None = None) -> list[TreeEntry]:
    """Tracked paths with their recorded mode and id (``ls-files -s``).

    Reads the index without locking it. Conflicted paths appear once.
    """
    output = _git(["ls-files", "-s", "-z"], cwd=path).stdout
    entries: dict[str, TreeEntry] = {}
    for record in output.split("\0"):
        if not record:
            continue
        meta, _, file_path = record.partition("\t")
        mode, oid, _stage = meta.split(" ", 2)
        entries.setdefault(file_path, TreeEntry(mode=mode, oid=oid, path=file_path))
    return list(entries.values())


def list_untracked(path: Path | None = None) -> list[str]:
    """Untracked, non-ignored paths."""
    output = _git(["ls-files", "--others", "--exclude-standard", "-z"], cwd=path).stdout
    return [p for p in output.split("\0") if p]


# =============================================================================
# Object creation (no index access)
# =============================================================================


def hash_files(paths: list[str], path: Path | None = None) -> list[str]:
    """Write blobs for working-tree files, returning one id per path.

    Content filters (autocrlf, clean filters) apply as they would on add.
    Paths are batched through ``--stdin-paths``; names that protocol cannot
    carry (a leading double quote is C-unquoted, a newline ends the line)
    are hashed one at a time.
    """
    batch = [p for p in paths if not _unsafe_stdin_path(p)]
    oids: dict[str, str] = {}
    if batch:
        output = _git(
            ["hash-object", "-w", "--stdin-paths"],
            cwd=path,
            input="\n".join(batch) + "\n",
        ).stdout
        batch_oids = output.split()
        if len(batch_oids) != len(batch):
            raise GitCommandError(
                ["hash-object", "-w", "--stdin-paths"],
                f"expected {len(batch)} ids, got {len(batch_oids)}",
            )
        oids.update(zip(batch, batch_oids))

    for odd in paths:
        if odd not in oids:
            oids[odd] = _git(["hash-object", "-w", "--", odd], cwd=path).stdout.strip()
    return [oids[p] for p in paths]


def _unsafe_stdin_path(file_path: str) -> bool:
    return file_path.startswith('"') or "\n" in file_path


def hash_bytes(data: bytes, path: Path | None = None) -> str:
    """Write a blob from raw bytes (used for symlink targets)."""
    return _git(["hash-object", "-w", "--stdin"], cwd=path, input=data).stdout.strip()


def mktree(entries: list[TreeEntry], path: Path | None = None) -> str:
    """Create one tree object from entries whose paths are plain names."""
    lines = [f"{e.mode} {e.object_type} {e.oid}\t{e.path}" for e in entries]
    payload = "\0".join(lines) + "\0" if lines else ""
    return _git(["mktree", "-z"], cwd=path, input=payload).stdout.strip()


def commit_tree(
    tree: str,
    message: str,
    parent: str | None = None,
    path: Path | None = None,
) -> str:
    args = ["commit-tree", tree, "-m", message]
    if parent:
        args[2:2] = ["-p", parent]
    return _git(args, cwd=path).stdout.strip()


# =============================================================================
# References and notes
# =============================================================================


def create_ref(ref: str, commit: str, path: Path | None = None) -> None:
    """Create a ref that must not already exist (empty old value)."""
    _git(["update-ref", ref, commit, ""], cwd=path)


def delete_ref(ref: str, path: Path | None = None) -> None:
    _git(["update-ref", "-d", ref], cwd=path)


def for_each_ref(prefix: str, fmt: str, path: Path | None = None) -> list[str]:
    """Lines of ``for-each-ref`` output for refs under prefix."""
    output = _git(["for-each-ref", f"--format={fmt}", prefix], cwd=path).stdout
    return [line for line in output.split("\n") if line]


def add_note(notes_ref: str, commit: str, message: str, path: Path | None = None) -> None:
    _git(["notes", f"--ref={notes_ref}", "add", "-f", "-m", message, commit], cwd=path)


def show_note(notes_ref: str, commit: str, path: Path | None = None) -> str | None:
    return _run_git(["notes", f"--ref={notes_ref}", "show", commit], cwd=path)


# =============================================================================
# Read paths: diff, grep, restore
# =============================================================================


def diff_stats(base: str, target: str, path: Path | None = None) -> DiffStats:
    """File-level diff statistics between two commit-ish values."""
    stats = _git(["diff", "--shortstat", base, target], cwd=path).stdout
    files_match = re.search(r"(\d+) files? changed", stats)
    ins_match = re.search(r"(\d+) insertions?", stats)
    del_match = re.search(r"(\d+) deletions?", stats)

    name_status = _git(["diff", "--name-status", "-z", base, target], cwd=path).stdout
    tokens = [t for t in name_status.split("\0") if t]
    files: list[tuple[str, str]] = []
    i = 0
    while i < len(tokens):
        status = tokens[i]
        # Renames and copies carry two paths; report the destination
        if status[:1] in ("R", "C") and i + 2 < len(tokens):
            files.append((status[:1], tokens[i + 2]))
            i += 3
        elif i + 1 < len(tokens):
            files.append((status, tokens[i + 1]))
            i += 2
        else:
            break

    return DiffStats(
        files_changed=int(files_match.group(1)) if files_match else len(files),
        insertions=int(ins_match.group(1)) if ins_match else 0,
        deletions=int(del_match.group(1)) if del_match else 0,
        files=tuple(files),
    )


def grep(
    pattern: str,
    rev: str,
    path: Path | None = None,
    ignore_case: bool = False,
) -> list[str]:
    """Matching lines (``path:line:text``) in a commit's tree.

    Exit code 1 means "no match" and yields an empty list.
    """
    args = ["grep", "-n", "-I", "--no-color"]
    if ignore_case:
        args.append("-i")
    args.extend(["-e", pattern, rev, "--"])
    output = _git(args, cwd=path, ok_codes=(0, 1)).stdout
    prefix = f"{rev}:"
    return [line[len(prefix):] if line.startswith(prefix) else line for line in output.split("\n") if line]


def list_tree_paths(rev: str, path: Path | None = None) -> list[str]:
    output = _git(["ls-tree", "-r", "-z", "--name-only", rev], cwd=path).stdout
    return [p for p in output.split("\0") if p]


def restore_worktree(source: str, path: Path | None = None) -> None:
    """Overwrite working-tree files to match ``source``; staged content is left alone."""
    _git(["restore", f"--source={source}", "--worktree", "--", "."], cwd=path)


def list_tree(rev: str, path: Path | None = None) -> list[TreeEntry]:
    """Every blob and tree under ``rev`` (``ls-tree -r -t``), full paths."""
    output = _git(["ls-tree", "-r", "-t", "-z", rev], cwd=path).stdout
    entries = []
    for record in output.split("\0"):
        if not record:
            continue
        meta, _, full_path = record.partition("\t")
        mode, _type, oid = meta.split(" ", 2)
        entries.append(TreeEntry(mode=mode, oid=oid, path=full_path))
    return entries


def commit_info(rev: str, path: Path | None = None) -> tuple[str, str] | None:
    """(committer date ISO 8601, subject) of a commit, or None if it does not resolve."""
    output = _run_git(["log", "-1", "--format=%cI%x00%s", rev, "--"], cwd=path)
    if not output:
        return None
    date, _, subject = output.partition("\0")
    return date, subject
