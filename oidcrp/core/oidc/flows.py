"""OIDC Authorization Code flow for a relying party.

The flow spans two HTTP round-trips with no server-side session:

1. :meth:`AuthorizationCodeFlow.create_authorization_request` builds the
   redirect to the IdP. The per-request key travels both inside the signed
   ``state`` and in a short-lived ``request-key`` cookie; with PKCE the code
   verifier travels only in a ``code-verifier`` cookie.
2. :meth:`AuthorizationCodeFlow.process_callback` checks the callback
   against those cookies, exchanges the code, validates the ID token,
   optionally fetches userinfo and hands everything to the claims processor.

Callback steps run strictly in order; the token endpoint is never contacted
before the state and cookies have been verified.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from oidcrp.core.errors import (
    AuthorizationDenied,
    CsrfMismatch,
    InvalidConnection,
    InvalidIdToken,
    MissingCode,
    MissingCookie,
    MissingPkceCookie,
    MissingState,
    OAuthFlowError,
    ParseError,
    TokenExchangeError,
    TokenExchangeIOError,
    UserInfoError,
)
from oidcrp.core.oidc.client import (
    OIDCClient,
    TokenResponse,
    UserInfoResponse,
    generate_code_challenge,
    generate_code_verifier,
)
from oidcrp.core.oidc.state import OAuthState, StateCodec
from oidcrp.core.oidc.validation import IDTokenClaims, JWKSManager, TokenValidator, get_jwks_manager

if TYPE_CHECKING:
    from oidcrp.core.oidc.claims import ClaimsProcessor, OidcCredentials
    from oidcrp.core.oidc.connection import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

COOKIE_NAME_REQUEST_KEY = "request-key"
COOKIE_NAME_CODE_VERIFIER = "code-verifier"
# Long enough for consent, account selection and 2FA at the IdP
COOKIE_MAX_AGE_SECONDS = 300

PARAMETER_NAME_CONNECTION = "c"
PARAMETER_NAME_REDIRECT = "redirect"

_RESERVED_AUTHORIZATION_PARAMETERS = frozenset(
    {
        "response_type",
        "client_id",
        "scope",
        "redirect_uri",
        "state",
        "code_challenge",
        "code_challenge_method",
    }
)


class CallbackStatus(StrEnum):
    """Progress of one callback through the flow."""

    AWAITING_CALLBACK = "awaiting_callback"
    STATE_VERIFIED = "state_verified"
    CODE_EXCHANGED = "code_exchanged"
    ID_TOKEN_VALIDATED = "id_token_validated"
    USERINFO_FETCHED = "userinfo_fetched"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Cookie:
    """A cookie the transport layer must set on the redirect response."""

    name: str
    value: str
    max_age: int = COOKIE_MAX_AGE_SECONDS
    path: str = "/"
    http_only: bool = True
    secure: bool = True
    # Lax so the cookie is sent on the top-level navigation back from the IdP
    same_site: str = "Lax"

    def __repr__(self) -> str:
        return f"Cookie(name={self.name!r}, max_age={self.max_age})"

    def to_header(self) -> str:
        """Render as a ``Set-Cookie`` header value."""
        parts = [f"{self.name}={self.value}", f"Max-Age={self.max_age}", f"Path={self.path}"]
        if self.http_only:
            parts.append("HttpOnly")
        if self.secure:
            parts.append("Secure")
        if self.same_site:
            parts.append(f"SameSite={self.same_site}")
        return "; ".join(parts)


@dataclass(frozen=True)
class RedirectTarget:
    """Where to send the user agent, and which cookies to set on the way."""

    url: str
    cookies: tuple[Cookie, ...] = ()


@dataclass(frozen=True)
class CallbackRequest:
    """The parts of an inbound callback request the flow needs."""

    url: str
    cookies: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthorizationResponse:
    """Parsed OAuth2 authorization response parameters."""

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    @property
    def indicates_success(self) -> bool:
        return self.error is None


@dataclass
class VerifiedIdentity:
    """Result of a completed callback, handed to the session layer."""

    subject: str
    idp: str
    connection_name: str
    claims: IDTokenClaims
    tokens: TokenResponse
    credentials: OidcCredentials
    userinfo: UserInfoResponse | None = None
    redirect_target: str | None = None

    def __repr__(self) -> str:
        return (
            f"VerifiedIdentity(subject={self.subject!r}, idp={self.idp!r}, "
            f"connection_name={self.connection_name!r})"
        )

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str | None:
        return self.tokens.refresh_token


@dataclass
class CallbackContext:
    """Tracks the state machine of one callback for logging and inspection."""

    status: CallbackStatus = CallbackStatus.AWAITING_CALLBACK
    history: list[CallbackStatus] = field(default_factory=lambda: [CallbackStatus.AWAITING_CALLBACK])
    connection_name: str | None = None
    error: OAuthFlowError | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def advance(self, status: CallbackStatus) -> None:
        logger.debug(f"Callback {self.status} -> {status}")
        self.status = status
        self.history.append(status)

    def reject(self, error: OAuthFlowError) -> None:
        self.error = error
        self.advance(CallbackStatus.REJECTED)


def parse_authorization_response(url: str) -> AuthorizationResponse:
    """Parse the query of a callback URL as an authorization response.

    Raises:
        ParseError: If the URL is malformed, carries no parameters or
            repeats a parameter.
    """
    try:
        query = urlsplit(url).query
    except ValueError:
        raise ParseError("Malformed authorization response URL") from None
    pairs = parse_qsl(query, keep_blank_values=True)

    if not pairs:
        raise ParseError("Missing authorization response parameters")

    params: dict[str, str] = {}
    for key, value in pairs:
        if key in params:
            raise ParseError(f"Parameter '{key}' is included more than once")
        params[key] = value

    return AuthorizationResponse(
        state=params.get("state") or None,
        code=params.get("code") or None,
        error=params.get("error") or None,
        error_description=params.get("error_description") or None,
        error_uri=params.get("error_uri") or None,
    )


def entry_point_uri(login_path: str, connection_name: str, redirect_path: str | None = None) -> str:
    """Build the URI of the login entry point for a connection.

    Args:
        login_path: Path (or URL) of the host's login endpoint.
        connection_name: Connection to authenticate against.
        redirect_path: Where to return after a successful login.
    """
    params = {PARAMETER_NAME_CONNECTION: connection_name}
    if redirect_path:
        params[PARAMETER_NAME_REDIRECT] = redirect_path
    return f"{login_path}?{urlencode(params)}"


class AuthorizationCodeFlow:
    """Builds authorization requests and processes their callbacks.

    The instance holds only configuration and is shared by all requests.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        state_codec: StateCodec,
        callback_uri: str,
        claims_processor: ClaimsProcessor,
        client: OIDCClient | None = None,
        idp: str = "oidc",
        pkce_enabled: bool = False,
        userinfo_enabled: bool = True,
        jwks_provider: Callable[[str], JWKSManager] = get_jwks_manager,
    ) -> None:
        """Initialize the flow handler.

        Args:
            registry: Read-only lookup of connections by name.
            state_codec: Codec for the ``state`` parameter.
            callback_uri: Absolute URI the IdP redirects back to.
            claims_processor: Maps validated tokens to credentials.
            client: Back-channel client; a default one is created if omitted.
            idp: Identity provider name given to the claims processor.
            pkce_enabled: Whether to use PKCE (S256).
            userinfo_enabled: Whether to call the userinfo endpoint.
            jwks_provider: Returns the JWKS manager for a key-set URL.
        """
        self.registry = registry
        self.state_codec = state_codec
        self.callback_uri = callback_uri
        self.claims_processor = claims_processor
        self.client = client or OIDCClient()
        self.idp = idp
        self.pkce_enabled = pkce_enabled
        self.userinfo_enabled = userinfo_enabled
        self._jwks_provider = jwks_provider

    def create_authorization_request(
        self,
        connection: Connection,
        redirect_target: str | None = None,
    ) -> RedirectTarget:
        """Create the redirect to the IdP's authorization endpoint.

        Args:
            connection: Connection to authenticate against.
            redirect_target: Requested post-login destination. Untrusted; the
                receiving layer must re-validate it after the callback.

        Returns:
            RedirectTarget with the authorization URL and the cookies to set.
        """
        per_request_key = secrets.token_urlsafe(32)
        state = self.state_codec.encode(OAuthState(per_request_key, connection.name, redirect_target))

        params: dict[str, str] = {
            "response_type": "code",
            "client_id": connection.client_id,
            "scope": " ".join(connection.scopes),
            "redirect_uri": self.callback_uri,
            "state": state,
        }

        cookies = [_flow_cookie(COOKIE_NAME_REQUEST_KEY, per_request_key)]

        if self.pkce_enabled:
            code_verifier = generate_code_verifier()
            params["code_challenge"] = generate_code_challenge(code_verifier)
            params["code_challenge_method"] = "S256"
            cookies.append(_flow_cookie(COOKIE_NAME_CODE_VERIFIER, code_verifier))

        for key, value in connection.authorization_parameters().items():
            if key in _RESERVED_AUTHORIZATION_PARAMETERS:
                logger.warning(f"Ignoring additional parameter '{key}' on connection '{connection.name}'")
                continue
            params[key] = value

        logger.debug(f"Created authorization request for connection '{connection.name}' (pkce={self.pkce_enabled})")
        return RedirectTarget(url=_append_query(connection.authorization_endpoint, params), cookies=tuple(cookies))

    def process_callback(
        self,
        request: CallbackRequest,
        context: CallbackContext | None = None,
    ) -> VerifiedIdentity:
        """Process the authorization callback.

        Args:
            request: URL and cookies of the callback request.
            context: Optional context that records the state transitions.

        Returns:
            The verified identity.

        Raises:
            CredentialsNotFound: The request is not a usable authorization
                response (ParseError, MissingState).
            OAuthFlowError: Any other rejection.
        """
        context = context or CallbackContext()
        try:
            identity = self._process_callback(request, context)
        except OAuthFlowError as e:
            context.reject(e)
            log = logger.warning if e.fatal else logger.info
            log(f"Callback rejected ({e.reason}): {e.message}")
            raise
        context.advance(CallbackStatus.COMPLETED)
        logger.info(f"User {identity.subject} authenticated via connection '{identity.connection_name}'")
        return identity

    def _process_callback(self, request: CallbackRequest, context: CallbackContext) -> VerifiedIdentity:
        response = parse_authorization_response(request.url)

        oauth_state = self.state_codec.decode(response.state)
        if oauth_state is None:
            raise MissingState("No state found in authorization response")

        if response.indicates_success and not response.code:
            raise MissingCode("No authorization code found in authorization response")

        request_key = request.cookies.get(COOKIE_NAME_REQUEST_KEY)
        if not request_key:
            raise MissingCookie(f"Failed state check: No request cookie named '{COOKIE_NAME_REQUEST_KEY}' found")

        code_verifier: str | None = None
        if self.pkce_enabled:
            code_verifier = request.cookies.get(COOKIE_NAME_CODE_VERIFIER)
            if not code_verifier:
                raise MissingPkceCookie(
                    f"Failed state check: No request cookie named '{COOKIE_NAME_CODE_VERIFIER}' found"
                )

        if not hmac.compare_digest(oauth_state.per_request_key.encode(), request_key.encode()):
            raise CsrfMismatch("Failed state check: request keys from client and server are not the same")
        context.advance(CallbackStatus.STATE_VERIFIED)

        if not response.indicates_success:
            raise AuthorizationDenied(
                "Error in authentication response",
                error_code=response.error,
                error_description=response.error_description,
            )

        connection = self._resolve(oauth_state.connection_name)
        context.connection_name = connection.name
        if response.code is None:
            raise MissingCode("No authorization code found in authorization response")

        token_response = self.client.exchange_code(
            connection,
            code=response.code,
            redirect_uri=self.callback_uri,
            code_verifier=code_verifier,
        )
        if token_response.is_io_error:
            raise TokenExchangeIOError(
                f"Failed to exchange authorization code for access token: {token_response.error_description}"
            )
        if not token_response.is_success:
            raise TokenExchangeError(
                "Error in token response",
                error_code=token_response.error,
                error_description=token_response.error_description,
                status_code=token_response.status_code,
            )
        context.advance(CallbackStatus.CODE_EXCHANGED)

        claims = self._validate_id_token(connection, token_response)
        context.advance(CallbackStatus.ID_TOKEN_VALIDATED)

        userinfo: UserInfoResponse | None = None
        if self.userinfo_enabled:
            userinfo = self._fetch_userinfo(connection, token_response, claims)
            if userinfo is not None:
                context.advance(CallbackStatus.USERINFO_FETCHED)

        credentials = self.claims_processor.process(userinfo, token_response, claims.subject, self.idp)

        return VerifiedIdentity(
            subject=claims.subject,
            idp=self.idp,
            connection_name=connection.name,
            claims=claims,
            tokens=token_response,
            credentials=credentials,
            userinfo=userinfo,
            redirect_target=oauth_state.redirect_target,
        )

    def _resolve(self, connection_name: str) -> Connection:
        if not connection_name or not connection_name.strip():
            raise InvalidConnection("No connection found in client state")
        return self.registry.resolve(connection_name)

    def validator_for(self, connection: Connection) -> TokenValidator:
        """Build the ID token validator for a connection."""
        return TokenValidator(
            jwks_manager=self._jwks_provider(connection.jwks_uri),
            issuer=connection.issuer,
            client_id=connection.client_id,
            algorithm=connection.id_token_algorithm,
        )

    def _validate_id_token(self, connection: Connection, token_response: TokenResponse) -> IDTokenClaims:
        if not token_response.id_token:
            raise InvalidIdToken("presence", "Token response contains no ID token")
        # No nonce is bound to the authorization request
        return self.validator_for(connection).validate(token_response.id_token)

    def _fetch_userinfo(
        self,
        connection: Connection,
        token_response: TokenResponse,
        claims: IDTokenClaims,
    ) -> UserInfoResponse | None:
        if not connection.userinfo_endpoint:
            logger.debug(f"Connection '{connection.name}' has no userinfo endpoint, skipping userinfo")
            return None

        userinfo = self.client.get_userinfo(connection, token_response.access_token)
        if not userinfo.is_success:
            raise UserInfoError(
                "Error in userinfo response",
                error_code=userinfo.error,
                error_description=userinfo.error_description,
                status_code=userinfo.status_code,
            )
        if userinfo.sub != claims.subject:
            raise UserInfoError(
                "Userinfo subject does not match ID token subject",
                error_code="subject_mismatch",
            )
        return userinfo


def _flow_cookie(name: str, value: str) -> Cookie:
    return Cookie(name=name, value=value)


def _append_query(url: str, params: Mapping[str, Any]) -> str:
    """Add parameters to a URL, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))
