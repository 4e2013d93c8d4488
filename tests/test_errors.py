"""Tests for the relying-party exception hierarchy."""

from __future__ import annotations

import pytest

from oidcrp.core.errors import (
    AuthorizationDenied,
    CredentialsNotFound,
    CsrfMismatch,
    InvalidIdToken,
    MissingCookie,
    MissingPkceCookie,
    MissingState,
    OAuthFlowError,
    ParseError,
    ProviderError,
    RejectReason,
    TokenExchangeError,
    TokenExchangeIOError,
    TokenRefreshError,
    UnknownConnection,
    UserInfoError,
)


class TestOAuthFlowError:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize("error_class", [ParseError, MissingState])
    def test_credentials_not_found(self, error_class: type[OAuthFlowError]) -> None:
        """Parse-level problems let another mechanism handle the request."""
        error = error_class("nope")
        assert isinstance(error, CredentialsNotFound)
        assert not error.fatal

    @pytest.mark.parametrize("error_class", [CsrfMismatch, MissingPkceCookie, MissingCookie])
    def test_security_violations_are_fatal(self, error_class: type[OAuthFlowError]) -> None:
        error = error_class("nope")
        assert error.fatal
        assert not isinstance(error, CredentialsNotFound)

    @pytest.mark.parametrize(
        "error_class",
        [AuthorizationDenied, TokenExchangeError, UserInfoError, TokenRefreshError],
    )
    def test_provider_errors(self, error_class: type[ProviderError]) -> None:
        error = error_class("Error in token response", "invalid_grant", "Code expired", 400)

        assert isinstance(error, ProviderError)
        assert str(error) == "Error in token response: invalid_grant. Status code: 400. Code expired"
        assert error.details == {"error": "invalid_grant", "error_description": "Code expired", "status_code": 400}

    def test_provider_error_without_details(self) -> None:
        assert str(AuthorizationDenied("Error in authentication response")) == "Error in authentication response"

    def test_user_message_is_generic(self) -> None:
        error = TokenExchangeError("Error in token response", "invalid_client", "client_secret=s3cret rejected")
        assert "s3cret" not in error.user_message

    def test_unknown_connection(self) -> None:
        error = UnknownConnection("demo2")
        assert error.name == "demo2"
        assert error.reason == RejectReason.UNKNOWN_CONNECTION
        assert error.http_status == 400

    def test_invalid_id_token(self) -> None:
        error = InvalidIdToken("issuer", "Issuer mismatch")
        assert error.check == "issuer"
        assert "issuer" in str(error)
        assert error.reason == RejectReason.INVALID_ID_TOKEN

    def test_io_error_status(self) -> None:
        assert TokenExchangeIOError("timeout").http_status == 502
