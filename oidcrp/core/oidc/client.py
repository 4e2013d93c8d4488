"""Back-channel OAuth2/OIDC client.

Talks to a connection's token and userinfo endpoints: authorization code
exchange (client-secret basic or PKCE), the refresh grant and userinfo
retrieval. Also holds the PKCE helpers used by the authorization request
builder.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import quote_plus

import httpx

from oidcrp.core.logging import LoggingClient, ProtocolLogger, get_protocol_logger

if TYPE_CHECKING:
    from oidcrp.core.oidc.connection import Connection

DEFAULT_HTTP_TIMEOUT = 10.0

# Error code used when the endpoint could not be reached at all
HTTP_ERROR = "http_error"
INVALID_RESPONSE = "invalid_response"


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier.

    Returns:
        256 bits of randomness, base64url-encoded without padding (43 chars).
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def generate_code_challenge(code_verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    Args:
        code_verifier: The code verifier string.

    Returns:
        BASE64URL(SHA256(verifier)) without padding.
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass
class TokenResponse:
    """Represents an OAuth2 token endpoint response."""

    access_token: str
    token_type: str
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None
    # Absolute expiry (epoch seconds) computed when the response was received
    expires_at: float | None = None

    raw_response: dict[str, Any] = field(default_factory=dict, repr=False)

    # Error information
    error: str | None = None
    error_description: str | None = None
    status_code: int | None = None

    def __repr__(self) -> str:
        if self.error:
            return f"TokenResponse(error={self.error!r}, status_code={self.status_code!r})"
        return (
            f"TokenResponse(token_type={self.token_type!r}, expires_in={self.expires_in!r}, "
            f"has_refresh_token={self.refresh_token is not None}, has_id_token={self.id_token is not None})"
        )

    @property
    def is_success(self) -> bool:
        """Check if the token response is successful."""
        return self.error is None and bool(self.access_token)

    @property
    def is_io_error(self) -> bool:
        """True if the endpoint could not be reached."""
        return self.error == HTTP_ERROR

    @classmethod
    def from_http_error(cls, error: Exception, context: str) -> TokenResponse:
        return cls(
            access_token="",
            token_type="",
            error=HTTP_ERROR,
            error_description=f"HTTP error during {context}: {type(error).__name__}",
        )


@dataclass
class UserInfoResponse:
    """Represents an OIDC userinfo response."""

    sub: str | None = None
    name: str | None = None
    email: str | None = None
    email_verified: bool | None = None
    preferred_username: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture: str | None = None

    # All claims
    claims: dict[str, Any] = field(default_factory=dict)

    # Error information
    error: str | None = None
    error_description: str | None = None
    status_code: int | None = None

    @property
    def is_success(self) -> bool:
        """Check if the userinfo response is successful."""
        return self.error is None and bool(self.sub)


class OIDCClient:
    """Client for the back-channel endpoints of any registered connection.

    One instance serves all connections; every call takes the connection it
    talks to. Network failures and timeouts never raise: they come back as
    responses whose ``error`` is ``http_error``.
    """

    def __init__(
        self,
        protocol_logger: ProtocolLogger | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the OIDC client.

        Args:
            protocol_logger: Optional protocol logger for HTTP traffic capture.
            timeout: Timeout in seconds applied to every request.
            http_client: Preconfigured HTTP client (mainly for tests).
        """
        self._protocol_logger = protocol_logger or get_protocol_logger()
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.Client:
        """Get or create HTTP client with logging."""
        if self._http_client is None:
            self._http_client = LoggingClient(
                protocol_logger=self._protocol_logger,
                timeout=self.timeout,
            )
        return self._http_client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def exchange_code(
        self,
        connection: Connection,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Without PKCE the client authenticates with HTTP basic auth. With
        PKCE only ``client_id`` and ``code_verifier`` are sent; the client
        secret is not combined with PKCE.

        Args:
            connection: Connection whose token endpoint is called.
            code: Authorization code from the callback.
            redirect_uri: The callback URI used in the authorization request.
            code_verifier: PKCE code verifier, if PKCE is enabled.

        Returns:
            TokenResponse with access token, id token, etc.
        """
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }

        auth: tuple[str, str] | None = None
        if code_verifier is not None:
            data["client_id"] = connection.client_id
            data["code_verifier"] = code_verifier
        else:
            auth = _basic_credentials(connection)

        return self._token_request(connection, data, auth, context="token exchange")

    def refresh_tokens(self, connection: Connection, refresh_token: str) -> TokenResponse:
        """Obtain fresh tokens with the refresh grant.

        Args:
            connection: Connection whose token endpoint is called.
            refresh_token: The stored refresh token.

        Returns:
            TokenResponse; a provider may or may not rotate the refresh token.
        """
        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        auth: tuple[str, str] | None = None
        if connection.client_secret:
            auth = _basic_credentials(connection)
        else:
            data["client_id"] = connection.client_id

        return self._token_request(connection, data, auth, context="token refresh")

    def _token_request(
        self,
        connection: Connection,
        data: dict[str, str],
        auth: tuple[str, str] | None,
        context: str,
    ) -> TokenResponse:
        try:
            response = self.http_client.post(
                connection.token_endpoint,
                data=data,
                auth=auth,
                # Some providers answer form-encoded unless JSON is asked for
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            return TokenResponse.from_http_error(e, context)

        try:
            response_data = response.json()
        except ValueError:
            return TokenResponse(
                access_token="",
                token_type="",
                error=INVALID_RESPONSE,
                error_description=f"Token endpoint returned a non-JSON body with status {response.status_code}",
                status_code=response.status_code,
            )
        if not isinstance(response_data, dict):
            response_data = {}

        if response.status_code != 200 or "error" in response_data:
            return TokenResponse(
                access_token="",
                token_type="",
                error=response_data.get("error", "token_error"),
                error_description=response_data.get(
                    "error_description",
                    f"Token request failed with status {response.status_code}",
                ),
                status_code=response.status_code,
                raw_response=response_data,
            )

        expires_in = _as_int(response_data.get("expires_in"))
        return TokenResponse(
            access_token=response_data.get("access_token", ""),
            token_type=response_data.get("token_type", "Bearer"),
            expires_in=expires_in,
            expires_at=time.time() + expires_in if expires_in is not None else None,
            refresh_token=response_data.get("refresh_token"),
            id_token=response_data.get("id_token"),
            scope=response_data.get("scope"),
            status_code=response.status_code,
            raw_response=response_data,
        )

    def get_userinfo(self, connection: Connection, access_token: str) -> UserInfoResponse:
        """Fetch user information from the userinfo endpoint.

        Args:
            connection: Connection whose userinfo endpoint is called.
            access_token: Bearer token for authorization.

        Returns:
            UserInfoResponse with user claims.
        """
        if not connection.userinfo_endpoint:
            return UserInfoResponse(
                error="no_endpoint",
                error_description="UserInfo endpoint not configured",
            )

        try:
            response = self.http_client.get(
                connection.userinfo_endpoint,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            return UserInfoResponse(
                error=HTTP_ERROR,
                error_description=f"HTTP error fetching userinfo: {type(e).__name__}",
            )

        if response.status_code != 200:
            error, description = _userinfo_error(response)
            return UserInfoResponse(
                error=error,
                error_description=description,
                status_code=response.status_code,
            )

        try:
            claims = response.json()
        except ValueError:
            claims = None
        if not isinstance(claims, dict):
            return UserInfoResponse(
                error=INVALID_RESPONSE,
                error_description="UserInfo endpoint did not return a JSON object",
                status_code=response.status_code,
            )

        return UserInfoResponse(
            sub=claims.get("sub"),
            name=claims.get("name"),
            email=claims.get("email"),
            email_verified=claims.get("email_verified"),
            preferred_username=claims.get("preferred_username"),
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
            picture=claims.get("picture"),
            claims=claims,
            status_code=response.status_code,
        )


def _basic_credentials(connection: Connection) -> tuple[str, str]:
    # RFC 6749 section 2.3.1: form-encode before base64
    return quote_plus(connection.client_id), quote_plus(connection.client_secret)


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _userinfo_error(response: httpx.Response) -> tuple[str, str]:
    """Extract an error code and description from a failed userinfo call."""
    fallback = f"UserInfo request failed with status {response.status_code}"
    try:
        error_data = response.json()
    except ValueError:
        error_data = None
    if isinstance(error_data, dict) and error_data.get("error"):
        return error_data["error"], error_data.get("error_description", fallback)

    # Bearer errors are usually reported in the challenge header
    challenge = response.headers.get("www-authenticate", "")
    for part in challenge.replace("Bearer", "", 1).split(","):
        key, _, value = part.strip().partition("=")
        if key == "error" and value:
            return value.strip('"'), fallback
    return "userinfo_error", fallback
