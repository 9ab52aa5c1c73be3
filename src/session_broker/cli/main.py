"""Main CLI entry point for session-broker.

Defines the CLI group and registers all subcommands.

Commands:
    token  - Print an access token for an account
    status - List cached sessions for the configured environment
    clean  - Delete cached sessions and lock files
    run    - Pre-fetch fixture tokens and run pytest

Subcommand help:
    session-broker COMMAND -h     Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli"]

import sys
from pathlib import Path

import click

from session_broker import __version__

from .commands.clean import clean
from .commands.run import run
from .commands.status import status
from .commands.token import token


class ReorderedGroup(click.Group):
    """Custom group that shows commands before custom help text."""

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """Add extra help after commands section."""
        formatter.write(
            """
Configuration (environment or .env):
  NHOST_AUTH_URL                   Identity service base URL (required)
  NHOST_GRAPHQL_URL                GraphQL endpoint
  HASURA_ADMIN_SECRET              Enables account auto-provisioning
  NHOST_TEST_EMAIL_A / _PASSWORD_A Fixture account "a" (likewise _B)

Examples:
  session-broker token user@example.com secret
  session-broker run tests/integration -x
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Dotenv file to load (default: ./.env when present)",
)
@click.pass_context
def cli(ctx: click.Context, version: bool, env_file: Path | None) -> None:
    """session-broker: shared authenticated sessions for integration tests."""
    if version:
        click.echo(f"session-broker {__version__}")
        sys.exit(0)
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Register commands
cli.add_command(clean)
cli.add_command(run)
cli.add_command(status)
cli.add_command(token)


def main() -> None:
    """CLI entry point."""
    cli()
