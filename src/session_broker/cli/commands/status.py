"""Status command for session-broker CLI.

Lists the sessions cached for the configured environment.
"""

from __future__ import annotations

__all__ = ["status"]

import json
import time

import click

from session_broker.cache import CredentialCache

from ..helpers import load_config_or_exit
from ..styling import style_dim, style_label


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show cached sessions for the configured environment.

    Examples:
        session-broker status
        session-broker status --json
    """
    config = load_config_or_exit(ctx)
    cache = CredentialCache(config.cache_dir, config.environment_key)
    now = time.time()

    sessions = [
        {
            "file": entry.path.name,
            "subject_id": entry.record.subject_id,
            "seconds_remaining": int(entry.record.seconds_remaining(now)),
            "fresh": entry.record.is_fresh(now, config.refresh_skew_seconds),
        }
        for entry in cache.entries()
    ]

    if as_json:
        click.echo(json.dumps({"environment": config.environment_key, "sessions": sessions}, indent=2))
        return

    click.echo(f"{style_label('Environment')} {config.environment_key}")
    click.echo(f"{style_label('Cache directory')} {cache.directory}")
    if not sessions:
        click.echo(style_dim("No cached sessions."))
        return

    click.echo(f"{style_label('Cached sessions')} {len(sessions)}")
    for info in sessions:
        state = click.style("fresh", fg="green") if info["fresh"] else click.style("stale", fg="yellow")
        click.echo(f"  {info['subject_id']:38} {state:>5}  {info['seconds_remaining']}s  {info['file']}")
