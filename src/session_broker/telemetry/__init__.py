"""Logging infrastructure for session-broker.

- formatters: Console and ISO 8601 JSONL formatters
- logger_setup: Component loggers and handler configuration
"""

from session_broker.telemetry.formatters import ConsoleFormatter, ISO8601Formatter
from session_broker.telemetry.logger_setup import configure_logging, get_logger

__all__ = [
    "ConsoleFormatter",
    "ISO8601Formatter",
    "configure_logging",
    "get_logger",
]
