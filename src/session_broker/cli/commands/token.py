"""Token command for session-broker CLI.

Prints a bearer token for an account, reusing the shared session cache.
"""

from __future__ import annotations

__all__ = ["token"]

import asyncio
import sys

import click
from pydantic import ValidationError

from session_broker.broker import SessionBroker
from session_broker.config import BrokerConfig, Identity
from session_broker.exceptions import BrokerError

from ..helpers import EXIT_BROKER_FAILURE, load_config_or_exit
from ..styling import style_error


async def _fetch_token(config: BrokerConfig, identity: Identity) -> str:
    async with SessionBroker(config) as broker:
        session = await broker.get_session(identity)
    return session.token


@click.command()
@click.argument("email")
@click.argument("password")
@click.pass_context
def token(ctx: click.Context, email: str, password: str) -> None:
    """Print an access token for EMAIL (no trailing newline).

    Examples:
        session-broker token user@example.com secret
        export TOKEN=$(session-broker token user@example.com secret)
    """
    config = load_config_or_exit(ctx)
    try:
        identity = Identity(email=email, password=password)
    except ValidationError as e:
        raise click.ClickException("EMAIL and PASSWORD must not be empty") from e

    try:
        access_token = asyncio.run(_fetch_token(config, identity))
    except BrokerError as e:
        click.echo(style_error(f"Could not obtain token for {email}: {e}"), err=True)
        sys.exit(EXIT_BROKER_FAILURE)

    click.echo(access_token, nl=False)
