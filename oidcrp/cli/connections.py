"""Connection inspection CLI commands."""

from __future__ import annotations

import click

from oidcrp.cli.common import error_result, json_option, load_registry, output_result


@click.group()
def connections() -> None:
    """Inspect configured IdP connections."""
    pass


@connections.command("list")
@json_option
@click.pass_context
def connections_list(ctx: click.Context, output_json: bool) -> None:
    """List configured connections.

    Examples:

        oidcrp connections list

        oidcrp connections list --json
    """
    app_config, registry = load_registry(ctx)
    default = app_config.handler.default_connection

    if output_json:
        output_result([
            {"name": c.name, "issuer": c.issuer, "default": c.name == default}
            for c in sorted(registry, key=lambda c: c.name)
        ])
        return

    if not len(registry):
        click.echo("No connections configured.")
        return

    for name in registry.names():
        connection = registry.resolve(name)
        marker = " (default)" if name == default else ""
        click.echo(f"{name}{marker}  {connection.issuer}")


@connections.command("show")
@click.argument("name")
@json_option
@click.pass_context
def connections_show(ctx: click.Context, name: str, output_json: bool) -> None:
    """Show a connection's endpoints and client settings.

    The client secret is never printed.
    """
    _, registry = load_registry(ctx)
    connection = registry.get(name)
    if connection is None:
        error_result(f"Unknown connection '{name}'", output_json)

    data = {
        "name": connection.name,
        "issuer": connection.issuer,
        "authorization_endpoint": connection.authorization_endpoint,
        "token_endpoint": connection.token_endpoint,
        "userinfo_endpoint": connection.userinfo_endpoint,
        "jwks_uri": connection.jwks_uri,
        "client_id": connection.client_id,
        "client_secret_set": bool(connection.client_secret),
        "scopes": list(connection.scopes),
        "additional_authorization_parameters": list(connection.additional_authorization_parameters),
        "id_token_algorithm": connection.id_token_algorithm,
    }

    if output_json:
        output_result(data)
        return

    click.echo(f"Connection: {connection.name}")
    for key, value in data.items():
        if key == "name":
            continue
        if isinstance(value, list):
            value = " ".join(value) or "-"
        click.echo(f"  {key}: {value if value is not None else '-'}")
