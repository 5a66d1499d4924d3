"""Atomic file write utilities for Timeline.

Provides atomic write operations that prevent data corruption on crash.
Uses the temp file + rename pattern which is atomic on POSIX systems.

The deferred queue log is the main consumer: records are appended with a
single ``O_APPEND`` write and the log is only ever rewritten as a whole
through ``atomic_write_jsonl``, so concurrent readers never see a torn file.

All functions return Result types for explicit error handling.

Security:
- Files are created with 0o600 permissions by default
- Parent directories are created with 0o700 permissions
- Temp files are cleaned up on failure
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from timeline.errors import Err, Ok, Result, TimelineError

logger = logging.getLogger(__name__)


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
) -> Result[Path, TimelineError]:
    """Atomically write text content to a file.

    Uses temp file + rename pattern for crash safety.
    Creates parent directories if they don't exist.

    Args:
        path: Target file path (must be absolute or resolvable)
        content: Text content to write
        mode: File permissions (default 0o600 - owner read/write only)

    Returns:
        Ok(path) on success, Err(TimelineError) on failure
    """
    path = Path(path)
    temp_path: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # Temp file must live in the same directory for rename to be atomic
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=f"{path.suffix}.tmp",
        )

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

            os.chmod(temp_path, mode)
            os.replace(temp_path, path)

            logger.debug(f"Atomic write complete: {path}")
            return Ok(path)

        except Exception as e:
            _cleanup_temp(temp_path)
            raise e

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            TimelineError(
                f"Permission denied writing to {path}",
                code="ATOMIC_PERMISSION_DENIED",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            TimelineError(
                f"Failed to write {path}: {e}",
                code="ATOMIC_WRITE_FAILED",
                context={"path": str(path), "error": str(e)},
            )
        )


def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o600,
) -> Result[Path, TimelineError]:
    """Atomically write YAML data to a file.

    Uses yaml.safe_dump for security (no arbitrary Python objects).
    """
    try:
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed: {e}")
        return Err(
            TimelineError(
                f"Failed to serialize data to YAML: {e}",
                code="YAML_SERIALIZATION_FAILED",
                context={"error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def atomic_write_jsonl(
    path: Path,
    records: list[dict[str, Any] | str],
    mode: int = 0o600,
) -> Result[Path, TimelineError]:
    """Atomically replace a JSONL (JSON Lines) file with the given records.

    A ``str`` record is written as-is (an already serialized line).

    Example:
        result = atomic_write_jsonl(Path("pending.jsonl"), [{"a": 1}, {"b": 2}])
    """
    try:
        lines = [record if isinstance(record, str) else json.dumps(record) for record in records]
        content = "\n".join(lines) + "\n" if lines else ""
    except (TypeError, ValueError) as e:
        logger.error(f"JSONL serialization failed: {e}")
        return Err(
            TimelineError(
                f"Failed to serialize records to JSONL: {e}",
                code="JSONL_SERIALIZATION_FAILED",
                context={"error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def append_jsonl(
    path: Path,
    record: dict[str, Any] | str,
    mode: int = 0o600,
) -> Result[Path, TimelineError]:
    """Append one record to a JSONL file with a single O_APPEND write.

    Never rewrites existing lines, so a reader or a concurrent appender
    never observes a partially rewritten file. ``record`` may be a raw line
    (used to preserve corrupt queue records verbatim).
    """
    path = Path(path)
    try:
        line = record if isinstance(record, str) else json.dumps(record)
    except (TypeError, ValueError) as e:
        return Err(
            TimelineError(
                f"Failed to serialize record: {e}",
                code="JSONL_SERIALIZATION_FAILED",
                context={"error": str(e)},
            )
        )

    data = (line.rstrip("\n") + "\n").encode("utf-8")
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, mode)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)
        return Ok(path)
    except OSError as e:
        logger.error(f"Failed to append to {path}: {e}")
        return Err(
            TimelineError(
                f"Failed to append to {path}: {e}",
                code="APPEND_FAILED",
                context={"path": str(path), "error": str(e)},
            )
        )


def _cleanup_temp(temp_path: str | None) -> None:
    """Clean up temporary file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Temp file may already be gone
        pass
