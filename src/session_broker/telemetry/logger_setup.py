"""Logger setup for session-broker.

All broker modules log under the ``session-broker`` logger hierarchy
(``session-broker.session``, ``session-broker.lock``, ...). Until
configure_logging() is called, records propagate to the root logger like any
library's, so pytest's caplog and the host application's handlers see them.

Logging destinations once configured:
- stderr: records at ``level`` and above, human-readable
- File (optional): same records as JSONL with ISO 8601 timestamps
"""

from __future__ import annotations

__all__ = [
    "configure_logging",
    "get_logger",
]

import logging
import sys
from pathlib import Path

from session_broker.constants import APP_NAME
from session_broker.telemetry.formatters import ConsoleFormatter, ISO8601Formatter


def get_logger(component: str) -> logging.Logger:
    """Return the logger for a broker component (e.g. "session")."""
    return logging.getLogger(f"{APP_NAME}.{component}")


def _ensure_log_directory(log_file: Path) -> None:
    """Create the log directory with owner-only permissions.

    Raises:
        OSError: If the directory cannot be created.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if sys.platform != "win32":
        try:
            log_file.parent.chmod(0o700)
        except OSError:
            pass  # Permission changes might fail on some systems


def configure_logging(level: int | str = logging.WARNING, log_file: Path | None = None) -> logging.Logger:
    """Attach console (and optional JSONL file) handlers to the broker logger.

    Safe to call repeatedly: existing handlers are closed and replaced.

    Args:
        level: Minimum level for both handlers.
        log_file: Optional JSONL log file path.

    Returns:
        The configured ``session-broker`` logger.

    Raises:
        OSError: If the log file or its directory cannot be created.
    """
    logger = logging.getLogger(APP_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(ConsoleFormatter())
    logger.addHandler(stderr_handler)

    if log_file is not None:
        _ensure_log_directory(log_file)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(ISO8601Formatter())
        logger.addHandler(file_handler)

    return logger
