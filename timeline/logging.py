"""Operator-visible logging for Timeline.

Hook-triggered captures print nothing, so the log file is the only place an
operator sees deferrals, failures and dead-lettered requests. The handler is
installed lazily by the CLI; library code only ever calls
``logging.getLogger(__name__)`` and the helpers below.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from timeline.config import TimelineConfig

logger = logging.getLogger("timeline")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"
_HANDLER_NAME = "timeline-file"


def configure_logging(config: TimelineConfig, verbose: bool = False) -> logging.Logger:
    """Attach a rotating file handler at ``config.log_file``.

    Safe to call more than once; the handler is installed a single time per
    log file path. Failure to create the log directory is not fatal.
    """
    level = logging.DEBUG if verbose else getattr(logging, str(config.log_level).upper(), logging.INFO)
    logger.setLevel(level)

    for handler in logger.handlers:
        if handler.get_name() == _HANDLER_NAME and getattr(handler, "baseFilename", None) == os.path.abspath(
            config.log_file
        ):
            return logger

    try:
        config.log_file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        handler = RotatingFileHandler(config.log_file, maxBytes=1_000_000, backupCount=3)
    except OSError as e:
        logger.debug(f"File logging unavailable: {e}")
        return logger

    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger


def log_capture_committed(workspace: str, reference: str, commit: str) -> None:
    logger.info(f"Snapshot {commit[:7]} -> {reference} ({workspace})")


def log_capture_noop(workspace: str) -> None:
    logger.debug(f"No changes to snapshot in {workspace}")


def log_capture_deferred(workspace: str, waited_ms: int, reason: str = "index locked") -> None:
    logger.info(f"Capture deferred for {workspace} after {waited_ms}ms: {reason}")


def log_capture_failed(workspace: str, error: BaseException) -> None:
    logger.warning(f"Capture failed for {workspace}: {error}")


def log_dead_letter(entry: dict, reason: str) -> None:
    logger.warning(
        f"Dead-lettered capture request for {entry.get('workspacePath', '?')} "
        f"(retries={entry.get('retryCount', '?')}): {reason}"
    )


def log_drain_summary(captured: int, retained: int, dead_lettered: int, corrupt: int) -> None:
    if captured or retained or dead_lettered or corrupt:
        logger.info(
            f"Queue drain: {captured} captured, {retained} pending, "
            f"{dead_lettered} dead-lettered, {corrupt} corrupt"
        )
