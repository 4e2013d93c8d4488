"""Server CLI commands."""

from pathlib import Path

import click


@click.command()
@click.option(
    "--host",
    "-h",
    default=None,
    help="Host to bind to (default: from config or 127.0.0.1)",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to (default: from config or 8080)",
)
@click.option(
    "--cert",
    type=click.Path(exists=True, path_type=Path),  # type: ignore[type-var]
    help="Path to TLS certificate (PEM format)",
)
@click.option(
    "--key",
    type=click.Path(exists=True, path_type=Path),  # type: ignore[type-var]
    help="Path to TLS private key (PEM format)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug mode",
)
@click.pass_context
def serve(
    ctx: click.Context,
    host: str | None,
    port: int | None,
    cert: Path | None,
    key: Path | None,
    debug: bool,
) -> None:
    """Start the relying-party web server.

    Examples:

        # Start with settings from config.yaml
        oidcrp serve

        # Serve HTTPS with a certificate
        oidcrp serve --cert /path/to/cert.pem --key /path/to/key.pem
    """
    from oidcrp.app import run_server
    from oidcrp.cli.common import load_app_config

    config = load_app_config(ctx)

    if debug:
        config.server.debug = True

    # Validate cert/key pair
    if cert and not key:
        raise click.ClickException("--key is required when --cert is provided")
    if key and not cert:
        raise click.ClickException("--cert is required when --key is provided")

    run_server(app_config=config, host=host, port=port, cert=cert, key=key)
