"""Encoding of the OAuth ``state`` parameter.

The state carries the per-request key, the connection name and the
optional post-login redirect across the round-trip to the IdP. It is a
compact HS256 JWT so that the IdP (or an attacker crafting a callback URL)
cannot alter the redirect or connection undetected. CSRF protection does
not rest on the signature: the per-request key must also match the
``request-key`` cookie.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import jwt

logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"
DEFAULT_STATE_MAX_AGE = 300


@dataclass(frozen=True)
class OAuthState:
    """Values bound to one authorization attempt."""

    per_request_key: str
    connection_name: str
    redirect_target: str | None = None


class StateCodec:
    """Serializes :class:`OAuthState` to and from the wire ``state`` value."""

    def __init__(self, secret: str, max_age: int = DEFAULT_STATE_MAX_AGE) -> None:
        """Initialize the codec.

        Args:
            secret: Key used to sign state values. Must be shared by every
                process that may receive the callback.
            max_age: Seconds a state value stays decodable.
        """
        if not secret:
            raise ValueError("State codec secret must not be empty")
        self._secret = secret
        self.max_age = max_age

    def encode(self, state: OAuthState) -> str:
        now = int(time.time())
        payload: dict[str, str | int] = {
            "k": state.per_request_key,
            "c": state.connection_name,
            "iat": now,
            "exp": now + self.max_age,
        }
        if state.redirect_target is not None:
            payload["r"] = state.redirect_target
        return jwt.encode(payload, self._secret, algorithm=STATE_ALGORITHM)

    def decode(self, value: str | None) -> OAuthState | None:
        """Decode a wire state value.

        Returns:
            The decoded state, or None if the value is absent, malformed,
            expired or not signed with this codec's secret.
        """
        if not value:
            return None
        try:
            payload = jwt.decode(
                value,
                self._secret,
                algorithms=[STATE_ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except jwt.PyJWTError as e:
            logger.debug(f"Rejected state value: {e}")
            return None

        per_request_key = payload.get("k")
        connection_name = payload.get("c")
        redirect = payload.get("r")
        if not isinstance(per_request_key, str) or not per_request_key:
            return None
        if not isinstance(connection_name, str):
            return None
        return OAuthState(
            per_request_key=per_request_key,
            connection_name=connection_name,
            redirect_target=redirect if isinstance(redirect, str) else None,
        )
