"""Authorization request and token inspection CLI commands."""

from __future__ import annotations

import secrets

import click

from oidcrp.cli.common import error_result, json_option, load_registry, output_result


@click.command("authorize-url")
@click.argument("name")
@click.option("--redirect", "redirect_target", default=None, help="Post-login redirect path")
@click.option("--pkce/--no-pkce", default=None, help="Override the configured PKCE setting")
@json_option
@click.pass_context
def authorize_url(
    ctx: click.Context,
    name: str,
    redirect_target: str | None,
    pkce: bool | None,
    output_json: bool,
) -> None:
    """Build an authorization request for connection NAME.

    Prints the authorization URL and the cookies a browser would receive.

    Examples:

        oidcrp authorize-url demo --redirect /reports

        oidcrp authorize-url demo --pkce --json
    """
    from oidcrp.core.errors import UnknownConnection
    from oidcrp.core.oidc.claims import DefaultClaimsProcessor
    from oidcrp.core.oidc.flows import AuthorizationCodeFlow
    from oidcrp.core.oidc.state import StateCodec

    app_config, registry = load_registry(ctx)
    handler = app_config.handler

    try:
        connection = registry.resolve(name)
    except UnknownConnection as e:
        error_result(e.message, output_json)

    flow = AuthorizationCodeFlow(
        registry=registry,
        state_codec=StateCodec(handler.state_secret or secrets.token_urlsafe(32)),
        callback_uri=handler.callback_uri,
        claims_processor=DefaultClaimsProcessor(),
        idp=handler.idp,
        pkce_enabled=handler.pkce_enabled if pkce is None else pkce,
    )
    target = flow.create_authorization_request(connection, redirect_target)

    if output_json:
        output_result({
            "url": target.url,
            "cookies": [cookie.to_header() for cookie in target.cookies],
        })
        return

    click.echo(target.url)
    click.echo("")
    click.echo("Cookies:")
    for cookie in target.cookies:
        click.echo(f"  Set-Cookie: {cookie.to_header()}")


@click.command("validate-token")
@click.argument("token")
@click.option("--connection", "-c", "connection_name", required=True, help="Connection that issued the token")
@click.option("--nonce", default=None, help="Expected nonce claim")
@json_option
@click.pass_context
def validate_token(
    ctx: click.Context,
    token: str,
    connection_name: str,
    nonce: str | None,
    output_json: bool,
) -> None:
    """Validate an ID token against a connection.

    Runs every check (format, algorithm, signature, subject, issuer,
    audience, expiry, nonce) and exits non-zero if one fails.
    """
    from oidcrp.core.errors import UnknownConnection
    from oidcrp.core.oidc.validation import TokenValidator, ValidationStatus, get_jwks_manager

    app_config, registry = load_registry(ctx)
    try:
        connection = registry.resolve(connection_name)
    except UnknownConnection as e:
        error_result(e.message, output_json)

    validator = TokenValidator(
        jwks_manager=get_jwks_manager(connection.jwks_uri, timeout=app_config.handler.http_timeout),
        issuer=connection.issuer,
        client_id=connection.client_id,
        algorithm=connection.id_token_algorithm,
    )
    result = validator.validate_token(token, nonce=nonce)

    if output_json:
        output_result(result.to_dict())
    else:
        for check in result.checks:
            symbol = {
                ValidationStatus.VALID: "ok  ",
                ValidationStatus.INVALID: "FAIL",
                ValidationStatus.SKIPPED: "skip",
            }[check.status]
            line = f"[{symbol}] {check.name}"
            if check.message:
                line += f": {check.message}"
            click.echo(line)
        click.echo("")
        click.echo("Token is valid." if result.is_valid else "Token is NOT valid.")

    if not result.is_valid:
        ctx.exit(1)
