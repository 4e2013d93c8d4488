"""Flask application factory."""

from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

from flask import Flask

from oidcrp.core.config import DEFAULT_CONFIG_DIR, AppConfig, load_config
from oidcrp.core.oidc.claims import DefaultClaimsProcessor
from oidcrp.core.oidc.client import OIDCClient
from oidcrp.core.oidc.connection import ConnectionRegistry
from oidcrp.core.oidc.flows import AuthorizationCodeFlow
from oidcrp.core.oidc.lifecycle import AccessTokenManager
from oidcrp.core.oidc.state import StateCodec
from oidcrp.core.oidc.validation import get_jwks_manager
from oidcrp.storage.database import Database
from oidcrp.storage.token_store import SqlTokenStore

if TYPE_CHECKING:
    from oidcrp.core.oidc.claims import ClaimsProcessor
    from oidcrp.core.oidc.validation import JWKSManager

logger = logging.getLogger(__name__)

ENV_SECRET_KEY = "OIDCRP_SECRET_KEY"


def _get_secret_key() -> str:
    """Get the Flask secret key from the environment or the key file."""
    secret_key = os.environ.get(ENV_SECRET_KEY)
    if secret_key:
        return secret_key

    # Use a persistent secret key from the config directory
    key_path = DEFAULT_CONFIG_DIR / "flask_secret.key"
    if key_path.exists():
        return key_path.read_text().strip()

    secret_key = secrets.token_hex(32)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(secret_key)
    key_path.chmod(0o600)
    return secret_key


def create_app(
    app_config: AppConfig | None = None,
    config: dict[str, Any] | None = None,
    oidc_client: OIDCClient | None = None,
    claims_processor: ClaimsProcessor | None = None,
    jwks_provider: Callable[[str], JWKSManager] | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        config: Optional Flask configuration overriding defaults.
        oidc_client: Back-channel client; built from the handler settings if omitted.
        claims_processor: Claims processor; DefaultClaimsProcessor if omitted.
        jwks_provider: Returns the JWKS manager for a key-set URL; the shared
            managers with the handler timeout if omitted.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigurationError: If the connections are misconfigured.
    """
    if app_config is None:
        app_config = load_config()
    config = config or {}

    app = Flask(__name__)

    # Default configuration
    app.config.from_mapping(
        SECRET_KEY=config.get("SECRET_KEY") or _get_secret_key(),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
    )
    app.config.from_mapping(config)

    handler = app_config.handler
    registry = ConnectionRegistry.from_config(app_config.connections)
    if handler.default_connection and handler.default_connection not in registry:
        logger.warning(f"Default connection '{handler.default_connection}' is not configured")

    state_secret = handler.state_secret
    if not state_secret:
        logger.warning("No state_secret configured; using a random one valid for this process only")
        state_secret = secrets.token_urlsafe(32)

    database = Database(app_config.storage.database_url)
    database.init_db()
    token_store = SqlTokenStore(database)

    client = oidc_client or OIDCClient(timeout=handler.http_timeout)
    flow = AuthorizationCodeFlow(
        registry=registry,
        state_codec=StateCodec(state_secret),
        callback_uri=handler.callback_uri,
        claims_processor=claims_processor or DefaultClaimsProcessor(),
        client=client,
        idp=handler.idp,
        pkce_enabled=handler.pkce_enabled,
        userinfo_enabled=handler.userinfo_enabled,
        jwks_provider=jwks_provider or partial(get_jwks_manager, timeout=handler.http_timeout),
    )

    app.config.update(
        OIDC_HANDLER=handler,
        OIDC_REGISTRY=registry,
        OIDC_FLOW=flow,
        OIDC_TOKEN_STORE=token_store,
        OIDC_TOKEN_MANAGER=AccessTokenManager(token_store, client, handler.login_path),
        OIDC_DATABASE=database,
    )

    # Register blueprints
    from oidcrp.web import routes

    routes.init_app(app)

    logger.info(f"Loaded {len(registry)} connection(s): {', '.join(registry.names()) or '-'}")
    return app


def run_server(
    app_config: AppConfig | None = None,
    host: str | None = None,
    port: int | None = None,
    cert: Path | None = None,
    key: Path | None = None,
) -> None:
    """Run the Flask development server.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        host: Override host from config.
        port: Override port from config.
        cert: TLS certificate (PEM). Serves plain HTTP when omitted.
        key: TLS private key (PEM).
    """
    if app_config is None:
        app_config = load_config()

    server_host = host or app_config.server.host
    server_port = port or app_config.server.port

    app = create_app(app_config)
    app.debug = app_config.server.debug

    ssl_context: tuple[str, str] | None = None
    if cert and key:
        ssl_context = (str(cert), str(key))
        protocol = "https"
    else:
        protocol = "http"
        print("WARNING: TLS is disabled. The flow cookies are Secure and need HTTPS.")
        print("")

    print("Starting oidcrp server...")
    print(f"  URL: {protocol}://{server_host}:{server_port}")
    print(f"  Callback URI: {app_config.handler.callback_uri}")
    print("")

    app.run(
        host=server_host,
        port=server_port,
        ssl_context=ssl_context,
    )
