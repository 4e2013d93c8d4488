"""Access-token lifecycle for protected resources.

Before serving a protected resource the host asks :class:`AccessTokenManager`
for a decision per (connection, identity) pair. A valid stored token is used
as-is, a missing one sends the user through the authorization flow, and an
expired one is refreshed with the stored refresh token.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from oidcrp.core.errors import TokenRefreshError
from oidcrp.core.oidc.flows import entry_point_uri

if TYPE_CHECKING:
    from oidcrp.core.oidc.client import OIDCClient, TokenResponse
    from oidcrp.core.oidc.connection import Connection

logger = logging.getLogger(__name__)


class TokenState(StrEnum):
    """State of a stored token."""

    VALID = "valid"
    MISSING = "missing"
    EXPIRED = "expired"


@dataclass(frozen=True)
class StoredToken:
    """A token read from the token store."""

    state: TokenState
    value: str | None = None

    def __repr__(self) -> str:
        return f"StoredToken(state={self.state!r})"

    @classmethod
    def missing(cls) -> StoredToken:
        return cls(TokenState.MISSING)


class TokenStore(Protocol):
    """External persistence of access and refresh tokens."""

    def get_access_token(self, connection: str, identity: str) -> StoredToken: ...

    def get_refresh_token(self, connection: str, identity: str) -> StoredToken: ...

    def persist_tokens(self, connection: str, identity: str, tokens: TokenResponse) -> None: ...

    def lock(self, connection: str, identity: str) -> AbstractContextManager[object]:
        """Serialize refresh attempts for one (connection, identity) pair."""
        ...


class TokenRefresher(Protocol):
    """Performs the refresh grant against a connection's token endpoint."""

    def refresh_tokens(self, connection: Connection, refresh_token: str) -> TokenResponse: ...


@dataclass(frozen=True)
class TokenDecision:
    """Outcome of an authorization check for a protected resource."""

    access_token: str | None = None
    redirect_url: str | None = None

    def __repr__(self) -> str:
        if self.proceed_allowed:
            return "TokenDecision(proceed)"
        return f"TokenDecision(redirect={self.redirect_url!r})"

    @property
    def proceed_allowed(self) -> bool:
        return self.access_token is not None

    @classmethod
    def proceed(cls, access_token: str) -> TokenDecision:
        return cls(access_token=access_token)

    @classmethod
    def redirect(cls, url: str) -> TokenDecision:
        return cls(redirect_url=url)


class AccessTokenManager:
    """Decides whether a request may proceed with a stored access token."""

    def __init__(
        self,
        store: TokenStore,
        refresher: TokenRefresher | OIDCClient,
        login_path: str,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Token store holding access and refresh tokens.
            refresher: Client performing the refresh grant.
            login_path: Path of the login entry point users are sent to.
        """
        self.store = store
        self.refresher = refresher
        self.login_path = login_path

    def authorize(self, connection: Connection, identity: str, request_path: str) -> TokenDecision:
        """Get a usable access token, or a redirect into the login flow.

        Args:
            connection: Connection the protected resource needs a token for.
            identity: Authenticated user the token belongs to.
            request_path: Path of the current request, used as the
                post-login redirect.

        Returns:
            ``TokenDecision.proceed`` with an access token, or
            ``TokenDecision.redirect`` to the login entry point.
        """
        access_token = self.store.get_access_token(connection.name, identity)
        if access_token.state is TokenState.VALID and access_token.value:
            return TokenDecision.proceed(access_token.value)
        if access_token.state is TokenState.MISSING:
            logger.debug(f"No access token for '{identity}' on connection '{connection.name}'")
            return self._reauthenticate(connection, request_path)

        with self.store.lock(connection.name, identity):
            # Another request may have refreshed while we waited
            access_token = self.store.get_access_token(connection.name, identity)
            if access_token.state is TokenState.VALID and access_token.value:
                return TokenDecision.proceed(access_token.value)

            refresh_token = self.store.get_refresh_token(connection.name, identity)
            if refresh_token.state is not TokenState.VALID or not refresh_token.value:
                logger.debug(f"No usable refresh token for '{identity}' on connection '{connection.name}'")
                return self._reauthenticate(connection, request_path)

            try:
                tokens = self._refresh(connection, refresh_token.value)
            except TokenRefreshError as e:
                logger.warning(f"Token refresh for '{identity}' on connection '{connection.name}' failed: {e}")
                return self._reauthenticate(connection, request_path)

            self.store.persist_tokens(connection.name, identity, tokens)

        logger.info(f"Refreshed access token for '{identity}' on connection '{connection.name}'")
        return TokenDecision.proceed(tokens.access_token)

    def _refresh(self, connection: Connection, refresh_token: str) -> TokenResponse:
        tokens = self.refresher.refresh_tokens(connection, refresh_token)
        if not tokens.is_success:
            raise TokenRefreshError(
                "Error refreshing access token",
                error_code=tokens.error,
                error_description=tokens.error_description,
                status_code=tokens.status_code,
            )
        return tokens

    def _reauthenticate(self, connection: Connection, request_path: str) -> TokenDecision:
        return TokenDecision.redirect(entry_point_uri(self.login_path, connection.name, request_path))
