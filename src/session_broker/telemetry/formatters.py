"""Log formatters for console and JSONL output.

Broker log calls pass dict messages ({"event": ..., "message": ..., ...}).
ConsoleFormatter shows the human-readable part; ISO8601Formatter writes the
whole dict as one JSON line with a UTC timestamp first.
"""

from __future__ import annotations

__all__ = ["ConsoleFormatter", "ISO8601Formatter"]

import json
import logging
from datetime import datetime, timezone


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for stderr.

    Extracts 'message' or 'event' from dict messages.
    """

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, dict):
            msg = record.msg.get("message") or record.msg.get("event", "")
            return f"{record.levelname}: {msg}"
        return f"{record.levelname}: {record.getMessage()}"


class ISO8601Formatter(logging.Formatter):
    """JSONL formatter with ISO 8601 timestamps (UTC).

    Format: {"time": "YYYY-MM-DDTHH:MM:SS.sssZ", "level": ..., "logger": ..., ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as a single JSON line.

        Args:
            record: The log record to format.

        Returns:
            str: JSON-formatted log entry.
        """
        timestamp = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )

        if isinstance(record.msg, dict):
            log_data = record.msg
        else:
            log_data = {"message": record.getMessage()}

        log_entry = {"time": timestamp, "level": record.levelname, "logger": record.name, **log_data}
        return json.dumps(log_entry, default=str)
