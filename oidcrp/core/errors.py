"""Exception hierarchy for the relying-party flows.

Every rejection raised while building an authorization request, processing
a callback or refreshing tokens derives from :class:`OAuthFlowError`. The
class attributes tell the hosting layer how to react:

- ``reason``: stable identifier of the failure kind.
- ``http_status``: status code to answer the user agent with.
- ``fatal``: security-policy violations that must never fall back to
  another authentication mechanism.

Messages are meant for logs. They never contain client secrets, codes,
verifiers or tokens; ``user_message`` is the generic text to show end users.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class RejectReason(StrEnum):
    """Why a flow was rejected."""

    PARSE_ERROR = "parse_error"
    MISSING_STATE = "missing_state"
    MISSING_CODE = "missing_code"
    MISSING_COOKIE = "missing_cookie"
    MISSING_PKCE_COOKIE = "missing_pkce_cookie"
    CSRF_MISMATCH = "csrf_mismatch"
    AUTHORIZATION_DENIED = "authorization_denied"
    INVALID_CONNECTION = "invalid_connection"
    TOKEN_EXCHANGE_IO_ERROR = "token_exchange_io_error"
    TOKEN_EXCHANGE_ERROR = "token_exchange_error"
    INVALID_ID_TOKEN = "invalid_id_token"
    USERINFO_ERROR = "userinfo_error"
    UNKNOWN_CONNECTION = "unknown_connection"
    TOKEN_REFRESH_ERROR = "token_refresh_error"
    CONFIGURATION_ERROR = "configuration_error"


class OAuthFlowError(Exception):
    """Base exception for all relying-party errors."""

    reason: RejectReason = RejectReason.PARSE_ERROR
    http_status: int = 401
    fatal: bool = False
    user_message: str = "Authentication failed"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CredentialsNotFound(OAuthFlowError):
    """The request is not an authorization response this handler can use.

    Hosts should let another authentication mechanism try the request.
    """


class ParseError(CredentialsNotFound):
    """The callback could not be parsed as an authorization response."""

    reason = RejectReason.PARSE_ERROR
    http_status = 400


class MissingState(CredentialsNotFound):
    """The authorization response has no usable ``state``."""

    reason = RejectReason.MISSING_STATE
    http_status = 400


class MissingCode(OAuthFlowError):
    """The authorization response carries neither a code nor an error."""

    reason = RejectReason.MISSING_CODE
    http_status = 400


class MissingCookie(OAuthFlowError):
    """The ``request-key`` cookie was not sent back."""

    reason = RejectReason.MISSING_COOKIE
    fatal = True


class MissingPkceCookie(OAuthFlowError):
    """PKCE is enabled but the ``code-verifier`` cookie is absent."""

    reason = RejectReason.MISSING_PKCE_COOKIE
    http_status = 400
    fatal = True


class CsrfMismatch(OAuthFlowError):
    """The per-request key in ``state`` differs from the cookie value."""

    reason = RejectReason.CSRF_MISMATCH
    http_status = 403
    fatal = True


class ProviderError(OAuthFlowError):
    """An error reported by the identity provider."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        error_description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        details = {
            "error": error_code,
            "error_description": error_description,
            "status_code": status_code,
        }
        super().__init__(_provider_message(message, error_code, error_description, status_code), details)
        self.error_code = error_code
        self.error_description = error_description
        self.status_code = status_code


class AuthorizationDenied(ProviderError):
    """The IdP answered the authorization request with an error."""

    reason = RejectReason.AUTHORIZATION_DENIED


class InvalidConnection(OAuthFlowError):
    """The state names no connection, or one that is not registered."""

    reason = RejectReason.INVALID_CONNECTION
    http_status = 400


class UnknownConnection(InvalidConnection):
    """Lookup of a connection name failed."""

    reason = RejectReason.UNKNOWN_CONNECTION

    def __init__(self, name: str) -> None:
        super().__init__(f"Requested unknown connection '{name}'", {"connection": name})
        self.name = name


class TokenExchangeIOError(OAuthFlowError):
    """The token endpoint could not be reached."""

    reason = RejectReason.TOKEN_EXCHANGE_IO_ERROR
    http_status = 502


class TokenExchangeError(ProviderError):
    """The token endpoint answered with an error response."""

    reason = RejectReason.TOKEN_EXCHANGE_ERROR


class InvalidIdToken(OAuthFlowError):
    """ID token validation failed.

    ``check`` names the failing check (signature, issuer, audience, ...).
    """

    reason = RejectReason.INVALID_ID_TOKEN

    def __init__(self, check: str, message: str) -> None:
        super().__init__(f"ID token {check} check failed: {message}", {"check": check})
        self.check = check


class UserInfoError(ProviderError):
    """The userinfo endpoint failed or answered with an error."""

    reason = RejectReason.USERINFO_ERROR


class TokenRefreshError(ProviderError):
    """A refresh grant failed."""

    reason = RejectReason.TOKEN_REFRESH_ERROR


class ConfigurationError(OAuthFlowError):
    """Configuration is missing or malformed."""

    reason = RejectReason.CONFIGURATION_ERROR
    http_status = 500


def _provider_message(
    context: str,
    error_code: str | None,
    error_description: str | None,
    status_code: int | None,
) -> str:
    message = context
    if error_code:
        message += f": {error_code}"
    if status_code is not None:
        message += f". Status code: {status_code}"
    if error_description:
        message += f". {error_description}"
    return message
