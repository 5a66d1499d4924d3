"""Host-tool hook payloads.

Lifecycle hooks pipe a JSON object on stdin describing the event. Only a
few fields matter for a snapshot's metadata; both the snake_case keys the
host currently sends and the older camelCase keys are accepted.

Example payload::

    {"session_id": "abc123", "cwd": "/home/me/project",
     "hook_event_name": "PostToolUse", "tool_name": "Edit",
     "tool_input": {"file_path": "/home/me/project/app.py"}}
"""

from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

logger = logging.getLogger(__name__)

CLAUDE_PROJECTS_DIR = Path.home() / ".claude" / "projects"


@dataclass(frozen=True)
class HookPayload:
    """The parts of a hook event that end up in snapshot metadata."""

    session_id: str | None = None
    tool: str | None = None
    files: tuple[str, ...] = ()
    project_path: str | None = None
    event: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookPayload:
        tool_input = data.get("tool_input") or {}
        files: list[str] = []
        raw_files = data.get("files")
        if isinstance(raw_files, list):
            files.extend(str(f) for f in raw_files)
        elif isinstance(raw_files, str):
            files.append(raw_files)
        if isinstance(tool_input, dict):
            for key in ("file_path", "notebook_path", "path"):
                if isinstance(tool_input.get(key), str):
                    files.append(tool_input[key])

        return cls(
            session_id=data.get("session_id") or data.get("sessionId"),
            tool=data.get("tool_name") or data.get("tool"),
            files=tuple(dict.fromkeys(files)),
            project_path=data.get("cwd") or data.get("projectPath"),
            event=data.get("hook_event_name"),
        )


def read_hook_payload(stream: TextIO | None = None) -> HookPayload:
    """Parse a hook payload from ``stream`` (default stdin).

    A terminal, empty input, or invalid JSON yields an empty payload; a
    hook must never fail because of its input.
    """
    stream = stream if stream is not None else sys.stdin
    try:
        if stream.isatty():
            return HookPayload()
        raw = stream.read()
    except (OSError, ValueError):
        return HookPayload()

    if not raw or not raw.strip():
        return HookPayload()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug(f"Ignoring invalid hook payload: {e}")
        return HookPayload()
    if not isinstance(data, dict):
        return HookPayload()
    return HookPayload.from_dict(data)


def claude_project_dir(project_path: Path | str, projects_dir: Path | None = None) -> Path:
    """Directory where the host tool keeps session logs for a project."""
    projects_dir = projects_dir or CLAUDE_PROJECTS_DIR
    return projects_dir / str(project_path).replace("/", "-")


def find_latest_session(project_path: Path | str, projects_dir: Path | None = None) -> str | None:
    """Id of the most recently modified session log for a project, if any."""
    session_dir = claude_project_dir(project_path, projects_dir)
    if not session_dir.is_dir():
        return None

    latest: tuple[float, str] | None = None
    for session_file in session_dir.glob("*.jsonl"):
        try:
            mtime = session_file.stat().st_mtime
        except OSError:
            continue
        if latest is None or mtime > latest[0]:
            latest = (mtime, session_file.stem)
    return latest[1] if latest else None


def resolve_session_id(
    payload: HookPayload,
    project_path: Path | str,
    projects_dir: Path | None = None,
) -> str:
    """Session id from the payload, else the newest session log, else a timestamp."""
    if payload.session_id:
        return payload.session_id
    return find_latest_session(project_path, projects_dir) or str(int(time.time() * 1000))
