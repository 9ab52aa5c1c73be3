"""Shared helpers for CLI commands."""

from __future__ import annotations

__all__ = [
    "EXIT_BROKER_FAILURE",
    "load_config_or_exit",
]

from pathlib import Path

import click

from session_broker.config import BrokerConfig
from session_broker.exceptions import ConfigurationError
from session_broker.telemetry import configure_logging

# Exit code when a token cannot be obtained
EXIT_BROKER_FAILURE = 2


def load_config_or_exit(ctx: click.Context) -> BrokerConfig:
    """Load broker configuration for a command and set up logging.

    Uses the ``--env-file`` given to the command group, if any.

    Raises:
        click.ClickException: If configuration is missing or invalid.
    """
    env_file: Path | None = (ctx.obj or {}).get("env_file")
    try:
        config = BrokerConfig.from_env(env_file=env_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    configure_logging(config.log_level, config.log_file)
    return config
