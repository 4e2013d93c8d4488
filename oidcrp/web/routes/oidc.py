"""OIDC login and callback routes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING, Any, cast
from urllib.parse import urlsplit

from flask import (
    Blueprint,
    current_app,
    g,
    jsonify,
    redirect,
    request,
    session,
)

if TYPE_CHECKING:
    from flask import Response
    from werkzeug.wrappers import Response as WerkzeugResponse

    from oidcrp.core.config import HandlerSettings
    from oidcrp.core.oidc.connection import ConnectionRegistry
    from oidcrp.core.oidc.flows import AuthorizationCodeFlow, RedirectTarget
    from oidcrp.core.oidc.lifecycle import AccessTokenManager
    from oidcrp.storage.token_store import SqlTokenStore

from oidcrp.core.errors import InvalidConnection, OAuthFlowError
from oidcrp.core.oidc.claims import TOKEN_ATTRIBUTE
from oidcrp.core.oidc.flows import (
    COOKIE_NAME_CODE_VERIFIER,
    COOKIE_NAME_REQUEST_KEY,
    PARAMETER_NAME_CONNECTION,
    PARAMETER_NAME_REDIRECT,
    CallbackRequest,
    entry_point_uri,
)

logger = logging.getLogger(__name__)

oidc_bp = Blueprint("oidc", __name__, url_prefix="/oidc")

# Session key constants
SESSION_USER_KEY = "oidc_user"
SESSION_CONNECTION_KEY = "oidc_connection"
SESSION_PROFILE_KEY = "oidc_profile"


def get_flow() -> AuthorizationCodeFlow:
    """Get the authorization code flow from the app context."""
    return cast("AuthorizationCodeFlow", current_app.config["OIDC_FLOW"])


def get_registry() -> ConnectionRegistry:
    """Get the connection registry from the app context."""
    return cast("ConnectionRegistry", current_app.config["OIDC_REGISTRY"])


def get_handler_settings() -> HandlerSettings:
    """Get the handler settings from the app context."""
    return cast("HandlerSettings", current_app.config["OIDC_HANDLER"])


def get_token_store() -> SqlTokenStore:
    """Get the token store from the app context."""
    return cast("SqlTokenStore", current_app.config["OIDC_TOKEN_STORE"])


def get_token_manager() -> AccessTokenManager:
    """Get the access-token manager from the app context."""
    return cast("AccessTokenManager", current_app.config["OIDC_TOKEN_MANAGER"])


def is_safe_redirect(target: str | None) -> bool:
    """Check that a redirect target stays on this host.

    Only host-relative paths are accepted: ``/x`` but not ``//x``,
    ``/\\x`` or anything with a scheme or host.
    """
    if not target or not target.startswith("/"):
        return False
    if target.startswith(("//", "/\\")):
        return False
    parts = urlsplit(target)
    return not parts.scheme and not parts.netloc


def current_request_path() -> str:
    """Path and query of the current request."""
    return request.full_path.rstrip("?")


def _redirect_with_cookies(target: RedirectTarget) -> WerkzeugResponse:
    response = redirect(target.url)
    for cookie in target.cookies:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            path=cookie.path,
            secure=cookie.secure,
            httponly=cookie.http_only,
            samesite=cookie.same_site,
        )
    return response


def _clear_flow_cookies(response: Response | WerkzeugResponse) -> None:
    for name in (COOKIE_NAME_REQUEST_KEY, COOKIE_NAME_CODE_VERIFIER):
        response.delete_cookie(name, path="/", secure=True, httponly=True, samesite="Lax")


@oidc_bp.route("/login")
def login() -> WerkzeugResponse:
    """Start the authorization code flow for a connection."""
    handler = get_handler_settings()
    connection_name = request.args.get(PARAMETER_NAME_CONNECTION) or handler.default_connection
    if not connection_name:
        raise InvalidConnection("Client requested no connection and no default connection is configured")

    connection = get_registry().resolve(connection_name)

    redirect_target = request.args.get(PARAMETER_NAME_REDIRECT)
    if redirect_target and not is_safe_redirect(redirect_target):
        logger.warning("Ignoring redirect target that is not a host-relative path")
        redirect_target = None

    target = get_flow().create_authorization_request(connection, redirect_target)
    return _redirect_with_cookies(target)


@oidc_bp.route("/callback")
def callback() -> WerkzeugResponse:
    """Handle the authorization response from the IdP."""
    handler = get_handler_settings()
    identity = get_flow().process_callback(
        CallbackRequest(url=request.url, cookies=dict(request.cookies))
    )

    get_token_store().persist_tokens(identity.connection_name, identity.subject, identity.tokens)

    session.clear()
    session[SESSION_USER_KEY] = identity.subject
    session[SESSION_CONNECTION_KEY] = identity.connection_name
    session[SESSION_PROFILE_KEY] = {
        name: value
        for name, value in identity.credentials.attributes.items()
        if name != TOKEN_ATTRIBUTE
    }

    target = identity.redirect_target
    if not is_safe_redirect(target):
        target = handler.default_redirect

    response = redirect(target or "/")
    _clear_flow_cookies(response)
    return response


@oidc_bp.route("/logout", methods=["POST"])
def logout() -> WerkzeugResponse:
    """Forget the login session and the stored tokens."""
    user = session.get(SESSION_USER_KEY)
    connection_name = session.get(SESSION_CONNECTION_KEY)
    if user and connection_name:
        get_token_store().delete_tokens(connection_name, user)
    session.clear()
    return redirect(get_handler_settings().default_redirect)


@oidc_bp.app_errorhandler(OAuthFlowError)
def handle_flow_error(error: OAuthFlowError) -> tuple[Response, int]:
    """Answer flow errors with a generic message."""
    logger.info(f"OIDC request failed ({error.reason}): {error.message}")
    response = jsonify({"error": str(error.reason), "message": error.user_message})
    if request.endpoint == "oidc.callback":
        _clear_flow_cookies(response)
    return response, error.http_status


def oauth_token_required(connection_name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Require a usable access token for ``connection_name``.

    Users without a login session, or whose token cannot be refreshed, are
    sent through the login flow and returned to the current path. The
    access token is available as ``g.access_token`` inside the view.
    """

    def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(f)
        def decorated_function(*args: Any, **kwargs: Any) -> Any:
            handler = get_handler_settings()
            user = session.get(SESSION_USER_KEY)
            if not user:
                return redirect(entry_point_uri(handler.login_path, connection_name, current_request_path()))

            connection = get_registry().resolve(connection_name)
            decision = get_token_manager().authorize(connection, user, current_request_path())
            if decision.redirect_url is not None:
                return redirect(decision.redirect_url)

            g.access_token = decision.access_token
            g.oidc_user = user
            return f(*args, **kwargs)

        return decorated_function

    return decorator
