"""Process-wide logging setup.

Each agent run writes to its own file (``run-<timestamp>.log``) inside the
configured log directory, in addition to the console. Files older than the
retention period are removed at startup. The log uploader ships these files
to the master, so the format is plain text, one record per line.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from emailloop.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Handlers installed by configure_logging(), removed by shutdown_logging()
_installed_handlers: list[logging.Handler] = []


def cleanup_old_logs(directory: Path, retention_days: int, *, now: float | None = None) -> int:
    """Delete ``*.log`` files whose modification time is past retention.

    Args:
        directory: Log directory to scan.
        retention_days: Maximum age in days.
        now: Reference timestamp (defaults to the current time).

    Returns:
        Number of files removed.
    """
    if not directory.is_dir():
        return 0

    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    removed = 0
    for path in directory.glob("*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning("Could not remove old log file %s: %s", path.name, e)
    return removed


def configure_logging(settings: Settings) -> Path:
    """Install console and per-run file handlers on the root logger.

    Args:
        settings: Agent settings (log level and log directory).

    Returns:
        Path of the log file for this run.
    """
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    directory = settings.logs.directory
    directory.mkdir(parents=True, exist_ok=True)
    removed = cleanup_old_logs(directory, settings.logs.retention_days)

    stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S")
    log_file = directory / f"run-{stamp}.log"

    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
    _installed_handlers.append(handler)

    logger.info("Logging to %s (removed %d expired log files)", log_file, removed)
    return log_file


def shutdown_logging() -> None:
    """Flush and detach the handlers installed by configure_logging()."""
    root = logging.getLogger()
    while _installed_handlers:
        handler = _installed_handlers.pop()
        handler.flush()
        root.removeHandler(handler)
        handler.close()
