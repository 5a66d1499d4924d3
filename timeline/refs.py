"""Snapshot reference naming.

A snapshot reference looks like::

    refs/heads/timelines/<line-of-work>/+<suffix>_snapshot

``<suffix>`` is a nanosecond timestamp, strictly increasing within a
process, so two captures in the same millisecond never collide and the
suffix alone orders snapshots. The line-of-work token may itself contain
slashes (``feature/auth``); parsing splits on the last ``/+``.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass

_SUFFIX_RE = re.compile(r"^\+(\d+)_snapshot$")

_suffix_lock = threading.Lock()
_last_suffix = 0


def next_suffix() -> int:
    """High-resolution timestamp, strictly greater than any previous one in this process."""
    global _last_suffix
    with _suffix_lock:
        suffix = max(time.time_ns(), _last_suffix + 1)
        _last_suffix = suffix
        return suffix


def ref_name(namespace: str, line_of_work: str, suffix: int) -> str:
    return f"{namespace.rstrip('/')}/{line_of_work}/+{suffix}_snapshot"


def line_prefix(namespace: str, line_of_work: str) -> str:
    """``for-each-ref`` prefix matching every snapshot of one line of work."""
    return f"{namespace.rstrip('/')}/{line_of_work}/"


@dataclass(frozen=True, order=True)
class SnapshotRef:
    """A parsed snapshot reference. Orders by suffix (oldest first)."""

    suffix: int
    line_of_work: str
    name: str  # Full ref name

    @property
    def short_name(self) -> str:
        """Name without the ``refs/heads/`` prefix, as ``git branch`` shows it."""
        return self.name.removeprefix("refs/heads/")

    @classmethod
    def parse(cls, name: str, namespace: str) -> SnapshotRef | None:
        """Parse a full ref name; None if it is not a snapshot reference."""
        prefix = namespace.rstrip("/") + "/"
        if not name.startswith(prefix):
            return None
        rest = name[len(prefix):]
        line_of_work, sep, leaf = rest.rpartition("/")
        if not sep or not line_of_work:
            return None
        match = _SUFFIX_RE.match(leaf)
        if not match:
            return None
        return cls(suffix=int(match.group(1)), line_of_work=line_of_work, name=name)
