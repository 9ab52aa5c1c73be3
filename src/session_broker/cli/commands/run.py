"""Run command for session-broker CLI.

Signs every configured fixture account in once, then runs pytest with the
tokens exported so that test processes skip sign-in entirely.
"""

from __future__ import annotations

__all__ = ["run"]

import asyncio
import os
import subprocess
import sys

import click

from session_broker.broker import SessionBroker
from session_broker.config import BrokerConfig
from session_broker.constants import ENV_ACCOUNT_BEARER, ENV_LOCK_DIR
from session_broker.exceptions import BrokerError

from ..helpers import EXIT_BROKER_FAILURE, load_config_or_exit
from ..styling import style_error, style_success

# Lock directory used for the test run unless one is configured
DEFAULT_RUN_LOCK_DIR = ".test-locks"


async def _prefetch_tokens(config: BrokerConfig) -> dict[str, str]:
    """Token per configured account label."""
    async with SessionBroker(config) as broker:
        sessions = await asyncio.gather(*(broker.session_for(label) for label in config.accounts))
    return {label: session.token for label, session in zip(config.accounts, sessions)}


@click.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("pytest_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx: click.Context, pytest_args: tuple[str, ...]) -> None:
    """Pre-fetch tokens, then run pytest with PYTEST_ARGS.

    Tokens are exported as NHOST_TEST_BEARER_<LABEL>; the exit code is
    pytest's.

    Examples:
        session-broker run
        session-broker run tests/integration -x -k permissions
    """
    config = load_config_or_exit(ctx)

    try:
        tokens = asyncio.run(_prefetch_tokens(config))
    except BrokerError as e:
        click.echo(style_error(f"Token pre-fetch failed: {e}"), err=True)
        sys.exit(EXIT_BROKER_FAILURE)

    env = dict(os.environ)
    for label, access_token in tokens.items():
        env[ENV_ACCOUNT_BEARER.format(label=label.upper())] = access_token
    if not env.get(ENV_LOCK_DIR):
        env[ENV_LOCK_DIR] = os.path.abspath(DEFAULT_RUN_LOCK_DIR)

    if tokens:
        click.echo(style_success(f"Pre-fetched tokens for: {', '.join(sorted(tokens))}"), err=True)

    completed = subprocess.run([sys.executable, "-m", "pytest", *pytest_args], env=env, check=False)
    sys.exit(completed.returncode)
