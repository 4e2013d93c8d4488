"""Extension point turning validated tokens into application credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from oidcrp.core.oidc.client import TokenResponse, UserInfoResponse

# Attribute under which the refresh token is handed to the login-cookie layer
TOKEN_ATTRIBUTE = ".token"

_PROFILE_CLAIMS = (
    "name",
    "email",
    "email_verified",
    "preferred_username",
    "given_name",
    "family_name",
    "picture",
)


@dataclass
class OidcCredentials:
    """Credentials produced for a successfully authenticated user."""

    user_id: str
    idp: str
    attributes: dict[str, Any] = field(default_factory=dict, repr=False)

    def get_attribute(self, name: str) -> Any:
        return self.attributes.get(name)


class ClaimsProcessor(Protocol):
    """Maps IdP data onto application credentials.

    Called exactly once per successful callback, after the ID token (and
    userinfo, when enabled) has been validated.
    """

    def process(
        self,
        userinfo: UserInfoResponse | None,
        token_response: TokenResponse,
        subject: str,
        idp: str,
    ) -> OidcCredentials: ...


class DefaultClaimsProcessor:
    """Copies standard profile claims into the credentials.

    With ``store_refresh_token`` the refresh token is exposed as the
    ``.token`` attribute so the login-cookie collaborator can persist it.
    """

    def __init__(self, store_refresh_token: bool = True) -> None:
        self.store_refresh_token = store_refresh_token

    def process(
        self,
        userinfo: UserInfoResponse | None,
        token_response: TokenResponse,
        subject: str,
        idp: str,
    ) -> OidcCredentials:
        credentials = OidcCredentials(user_id=subject, idp=idp)
        if userinfo is not None:
            for claim in _PROFILE_CLAIMS:
                value = userinfo.claims.get(claim)
                if value is not None:
                    credentials.attributes[f"profile/{claim}"] = value
        if self.store_refresh_token and token_response.refresh_token:
            credentials.attributes[TOKEN_ATTRIBUTE] = token_response.refresh_token
        return credentials
