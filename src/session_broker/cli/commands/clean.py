"""Clean command for session-broker CLI."""

from __future__ import annotations

__all__ = ["clean"]

import click

from session_broker.cache import purge_state_files

from ..helpers import load_config_or_exit
from ..styling import style_success


@click.command()
@click.pass_context
def clean(ctx: click.Context) -> None:
    """Delete cached sessions and sign-in lock files.

    Every session-broker file in the cache and lock directories is removed,
    for all environments.
    """
    config = load_config_or_exit(ctx)
    removed = purge_state_files(config.cache_dir, config.lock_dir)
    click.echo(style_success(f"Removed {removed} file(s)"))
