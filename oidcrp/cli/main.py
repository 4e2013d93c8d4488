"""CLI entry point for oidcrp."""

from pathlib import Path

import click

from oidcrp import __version__
from oidcrp.cli import connections as connection_commands
from oidcrp.cli import serve as serve_commands
from oidcrp.cli import tokens as token_commands


@click.group()
@click.version_option(version=__version__, prog_name="oidcrp")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    envvar="OIDCRP_CONFIG",
    help="Path to config.yaml (default: ~/.oidcrp/config.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["ERROR", "WARNING", "INFO", "DEBUG", "TRACE"], case_sensitive=False),
    default="WARNING",
    help="Log level for protocol and application logs",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str) -> None:
    """oidcrp - OAuth2/OIDC relying party with PKCE."""
    from oidcrp.core.logging import configure_logging

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(level=log_level)


cli.add_command(connection_commands.connections)
cli.add_command(token_commands.authorize_url)
cli.add_command(token_commands.validate_token)
cli.add_command(serve_commands.serve)
