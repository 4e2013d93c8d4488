"""Helpers shared by the CLI commands."""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Any, NoReturn

import click

if TYPE_CHECKING:
    from oidcrp.core.config import AppConfig
    from oidcrp.core.oidc.connection import ConnectionRegistry

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)


def output_result(data: dict[str, Any] | list[Any]) -> None:
    """Output result as JSON."""
    click.echo(json.dumps(data, indent=2, default=str))


def error_result(message: str, as_json: bool = False) -> NoReturn:
    """Output error message and exit.

    Args:
        message: Error message
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2), err=True)
        sys.exit(1)
    raise click.ClickException(message)


def load_app_config(ctx: click.Context) -> AppConfig:
    """Load the configuration selected on the command line."""
    from oidcrp.core.config import load_config
    from oidcrp.core.errors import ConfigurationError

    try:
        return load_config(ctx.obj.get("config_path") if ctx.obj else None)
    except ConfigurationError as e:
        raise click.ClickException(e.message) from None


def load_registry(ctx: click.Context) -> tuple[AppConfig, ConnectionRegistry]:
    """Load the configuration and build the connection registry."""
    from oidcrp.core.errors import ConfigurationError
    from oidcrp.core.oidc.connection import ConnectionRegistry

    app_config = load_app_config(ctx)
    try:
        return app_config, ConnectionRegistry.from_config(app_config.connections)
    except ConfigurationError as e:
        raise click.ClickException(e.message) from None
