"""Tests for the authorization request builder and callback processor."""

from __future__ import annotations

from collections.abc import Callable
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytest

from oidcrp.core.errors import (
    AuthorizationDenied,
    CredentialsNotFound,
    CsrfMismatch,
    InvalidConnection,
    InvalidIdToken,
    MissingCode,
    MissingCookie,
    MissingPkceCookie,
    MissingState,
    ParseError,
    TokenExchangeError,
    TokenExchangeIOError,
    UnknownConnection,
    UserInfoError,
)
from oidcrp.core.oidc.claims import TOKEN_ATTRIBUTE
from oidcrp.core.oidc.client import generate_code_challenge, generate_code_verifier
from oidcrp.core.oidc.connection import Connection, resolve_connection
from oidcrp.core.oidc.flows import (
    COOKIE_NAME_CODE_VERIFIER,
    COOKIE_NAME_REQUEST_KEY,
    AuthorizationCodeFlow,
    CallbackContext,
    CallbackRequest,
    CallbackStatus,
    Cookie,
    RedirectTarget,
    entry_point_uri,
    parse_authorization_response,
)
from oidcrp.core.oidc.state import OAuthState, StateCodec

from .conftest import CALLBACK_URI, CLIENT_ID, CLIENT_SECRET, RAW_CONNECTION, FakeIdP


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlsplit(url).query)


def _callback(target: RedirectTarget, **params: str) -> CallbackRequest:
    """Build the callback a browser would make after ``target``."""
    state = _query(target.url)["state"][0]
    query = urlencode({"state": state, **params})
    return CallbackRequest(
        url=f"{CALLBACK_URI}?{query}",
        cookies={cookie.name: cookie.value for cookie in target.cookies},
    )


class TestCookie:
    """Tests for Cookie."""

    def test_defaults(self) -> None:
        """Flow cookies are short-lived, HttpOnly and Secure."""
        cookie = Cookie(name="request-key", value="v")
        assert cookie.max_age == 300
        assert cookie.http_only is True
        assert cookie.secure is True
        assert cookie.path == "/"

    def test_to_header(self) -> None:
        header = Cookie(name="request-key", value="v").to_header()
        assert header == "request-key=v; Max-Age=300; Path=/; HttpOnly; Secure; SameSite=Lax"

    def test_repr_hides_value(self) -> None:
        assert "secret-value" not in repr(Cookie(name="code-verifier", value="secret-value"))


class TestParseAuthorizationResponse:
    """Tests for parse_authorization_response."""

    def test_success_response(self) -> None:
        response = parse_authorization_response(f"{CALLBACK_URI}?code=c1&state=s1")
        assert response.code == "c1"
        assert response.state == "s1"
        assert response.indicates_success

    def test_error_response(self) -> None:
        response = parse_authorization_response(
            f"{CALLBACK_URI}?error=access_denied&error_description=User+cancelled&state=s1"
        )
        assert not response.indicates_success
        assert response.error == "access_denied"
        assert response.error_description == "User cancelled"

    def test_no_parameters(self) -> None:
        with pytest.raises(ParseError):
            parse_authorization_response(CALLBACK_URI)

    def test_repeated_parameter(self) -> None:
        with pytest.raises(ParseError):
            parse_authorization_response(f"{CALLBACK_URI}?code=a&code=b&state=s")

    def test_malformed_url(self) -> None:
        with pytest.raises(ParseError):
            parse_authorization_response("https://[::1/callback?code=a")


class TestEntryPointUri:
    """Tests for entry_point_uri."""

    def test_with_redirect(self) -> None:
        uri = entry_point_uri("/oidc/login", "demo", "/reports?page=2")
        assert uri.startswith("/oidc/login?")
        assert _query(uri) == {"c": ["demo"], "redirect": ["/reports?page=2"]}

    def test_without_redirect(self) -> None:
        assert entry_point_uri("/oidc/login", "demo") == "/oidc/login?c=demo"


class TestCreateAuthorizationRequest:
    """Tests for AuthorizationCodeFlow.create_authorization_request."""

    def test_demo_connection(self, flow: AuthorizationCodeFlow, connection: Connection) -> None:
        """The redirect carries the standard parameters and a request-key cookie."""
        target = flow.create_authorization_request(connection)

        assert target.url.startswith("https://idp.example.com/auth?")
        assert "client_id=abc" in target.url
        assert "scope=openid+profile" in target.url
        assert "response_type=code" in target.url

        params = _query(target.url)
        assert params["redirect_uri"] == [CALLBACK_URI]
        assert "code_challenge" not in params
        assert [cookie.name for cookie in target.cookies] == [COOKIE_NAME_REQUEST_KEY]

    def test_state_binds_request_key_and_redirect(
        self,
        flow: AuthorizationCodeFlow,
        connection: Connection,
        state_codec: StateCodec,
    ) -> None:
        target = flow.create_authorization_request(connection, "/reports")

        state = state_codec.decode(_query(target.url)["state"][0])
        assert state is not None
        assert state.connection_name == "demo"
        assert state.redirect_target == "/reports"
        assert state.per_request_key == target.cookies[0].value

    def test_request_keys_are_unique(self, flow: AuthorizationCodeFlow, connection: Connection) -> None:
        first = flow.create_authorization_request(connection)
        second = flow.create_authorization_request(connection)
        assert first.cookies[0].value != second.cookies[0].value

    def test_pkce(self, make_flow: Callable[..., AuthorizationCodeFlow], connection: Connection) -> None:
        """The challenge is the S256 hash of the verifier sent in the cookie."""
        target = make_flow(pkce_enabled=True).create_authorization_request(connection)

        params = _query(target.url)
        cookies = {cookie.name: cookie.value for cookie in target.cookies}
        assert params["code_challenge_method"] == ["S256"]
        assert params["code_challenge"] == [generate_code_challenge(cookies[COOKIE_NAME_CODE_VERIFIER])]
        assert set(cookies) == {COOKIE_NAME_REQUEST_KEY, COOKIE_NAME_CODE_VERIFIER}

    def test_additional_parameters(self, flow: AuthorizationCodeFlow) -> None:
        connection = resolve_connection(
            {**RAW_CONNECTION, "additional_authorization_parameters": ["prompt=login", "ui_locales=de"]}
        )
        params = _query(flow.create_authorization_request(connection).url)
        assert params["prompt"] == ["login"]
        assert params["ui_locales"] == ["de"]

    def test_additional_parameters_cannot_override_core(self, flow: AuthorizationCodeFlow) -> None:
        connection = resolve_connection(
            {**RAW_CONNECTION, "additional_authorization_parameters": ["client_id=evil"]}
        )
        params = _query(flow.create_authorization_request(connection).url)
        assert params["client_id"] == [CLIENT_ID]

    def test_existing_query_is_kept(self, flow: AuthorizationCodeFlow) -> None:
        connection = resolve_connection(
            {**RAW_CONNECTION, "authorization_endpoint": "https://idp.example.com/auth?tenant=t1"}
        )
        params = _query(flow.create_authorization_request(connection).url)
        assert params["tenant"] == ["t1"]
        assert params["response_type"] == ["code"]


class TestProcessCallback:
    """Tests for AuthorizationCodeFlow.process_callback."""

    def test_success(self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP) -> None:
        target = flow.create_authorization_request(connection, "/reports")
        context = CallbackContext()

        identity = flow.process_callback(_callback(target, code="code-1"), context)

        assert identity.subject == "user-1"
        assert identity.connection_name == "demo"
        assert identity.idp == "oidc"
        assert identity.access_token == "access-1"
        assert identity.refresh_token == "refresh-1"
        assert identity.redirect_target == "/reports"
        assert identity.userinfo is not None
        assert identity.credentials.get_attribute("profile/email") == "user@example.com"
        assert identity.credentials.get_attribute(TOKEN_ATTRIBUTE) == "refresh-1"
        assert context.history == [
            CallbackStatus.AWAITING_CALLBACK,
            CallbackStatus.STATE_VERIFIED,
            CallbackStatus.CODE_EXCHANGED,
            CallbackStatus.ID_TOKEN_VALIDATED,
            CallbackStatus.USERINFO_FETCHED,
            CallbackStatus.COMPLETED,
        ]

    def test_token_request_uses_basic_auth(
        self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP
    ) -> None:
        target = flow.create_authorization_request(connection)
        flow.process_callback(_callback(target, code="code-1"))

        request = idp.token_requests[0]
        form = idp.form()
        assert request.headers["Authorization"].startswith("Basic ")
        assert request.headers["Accept"] == "application/json"
        assert form == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": CALLBACK_URI,
        }

    def test_csrf_mismatch_never_reaches_token_endpoint(
        self, flow: AuthorizationCodeFlow, state_codec: StateCodec, idp: FakeIdP
    ) -> None:
        """A state whose key differs from the cookie is rejected before any network call."""
        state = state_codec.encode(OAuthState("attacker-key", "demo"))
        request = CallbackRequest(
            url=f"{CALLBACK_URI}?{urlencode({'code': 'c', 'state': state})}",
            cookies={COOKIE_NAME_REQUEST_KEY: "victim-key"},
        )
        context = CallbackContext()

        with pytest.raises(CsrfMismatch) as exc_info:
            flow.process_callback(request, context)

        assert exc_info.value.fatal
        assert exc_info.value.http_status == 403
        assert context.status == CallbackStatus.REJECTED
        assert idp.token_requests == []

    def test_missing_request_cookie(
        self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP
    ) -> None:
        target = flow.create_authorization_request(connection)
        request = _callback(target, code="code-1")

        with pytest.raises(MissingCookie):
            flow.process_callback(CallbackRequest(url=request.url, cookies={}))
        assert idp.token_requests == []

    def test_missing_state(self, flow: AuthorizationCodeFlow) -> None:
        with pytest.raises(MissingState) as exc_info:
            flow.process_callback(CallbackRequest(url=f"{CALLBACK_URI}?code=c", cookies={}))
        assert isinstance(exc_info.value, CredentialsNotFound)

    def test_forged_state(self, flow: AuthorizationCodeFlow) -> None:
        forged = StateCodec("some-other-secret").encode(OAuthState("k", "demo"))
        request = CallbackRequest(
            url=f"{CALLBACK_URI}?{urlencode({'code': 'c', 'state': forged})}",
            cookies={COOKIE_NAME_REQUEST_KEY: "k"},
        )
        with pytest.raises(MissingState):
            flow.process_callback(request)

    def test_missing_code(self, flow: AuthorizationCodeFlow, connection: Connection) -> None:
        target = flow.create_authorization_request(connection)
        with pytest.raises(MissingCode):
            flow.process_callback(_callback(target))

    def test_error_response(self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP) -> None:
        target = flow.create_authorization_request(connection)

        with pytest.raises(AuthorizationDenied) as exc_info:
            flow.process_callback(
                _callback(target, error="access_denied", error_description="User cancelled")
            )

        assert exc_info.value.error_code == "access_denied"
        assert exc_info.value.error_description == "User cancelled"
        assert idp.token_requests == []

    def test_error_response_still_requires_cookie(self, flow: AuthorizationCodeFlow, connection: Connection) -> None:
        target = flow.create_authorization_request(connection)
        request = _callback(target, error="access_denied")

        with pytest.raises(MissingCookie):
            flow.process_callback(CallbackRequest(url=request.url, cookies={}))

    def test_unknown_connection(
        self, flow: AuthorizationCodeFlow, state_codec: StateCodec, idp: FakeIdP
    ) -> None:
        state = state_codec.encode(OAuthState("k", "nope"))
        request = CallbackRequest(
            url=f"{CALLBACK_URI}?{urlencode({'code': 'c', 'state': state})}",
            cookies={COOKIE_NAME_REQUEST_KEY: "k"},
        )
        with pytest.raises(UnknownConnection) as exc_info:
            flow.process_callback(request)
        assert exc_info.value.name == "nope"
        assert idp.token_requests == []

    def test_blank_connection(self, flow: AuthorizationCodeFlow, state_codec: StateCodec) -> None:
        state = state_codec.encode(OAuthState("k", ""))
        request = CallbackRequest(
            url=f"{CALLBACK_URI}?{urlencode({'code': 'c', 'state': state})}",
            cookies={COOKIE_NAME_REQUEST_KEY: "k"},
        )
        with pytest.raises(InvalidConnection):
            flow.process_callback(request)

    def test_token_endpoint_unreachable(
        self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP
    ) -> None:
        idp.token_exception = httpx.ConnectTimeout("timed out")
        target = flow.create_authorization_request(connection)

        with pytest.raises(TokenExchangeIOError):
            flow.process_callback(_callback(target, code="code-1"))

    def test_token_endpoint_error(self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP) -> None:
        idp.token_error = (400, {"error": "invalid_client", "error_description": "Bad credentials"})
        target = flow.create_authorization_request(connection)

        with pytest.raises(TokenExchangeError) as exc_info:
            flow.process_callback(_callback(target, code="code-1"))

        error = exc_info.value
        assert error.error_code == "invalid_client"
        assert error.status_code == 400
        assert CLIENT_SECRET not in str(error)

    def test_invalid_id_token(self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP) -> None:
        idp.id_token_claims = {"iss": "https://evil.example.com"}
        target = flow.create_authorization_request(connection)
        context = CallbackContext()

        with pytest.raises(InvalidIdToken) as exc_info:
            flow.process_callback(_callback(target, code="code-1"), context)

        assert exc_info.value.check == "issuer"
        assert CallbackStatus.ID_TOKEN_VALIDATED not in context.history
        assert idp.userinfo_requests == []

    def test_userinfo_subject_mismatch(
        self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP
    ) -> None:
        idp.userinfo_body = {"sub": "someone-else"}
        target = flow.create_authorization_request(connection)

        with pytest.raises(UserInfoError):
            flow.process_callback(_callback(target, code="code-1"))

    def test_userinfo_error(self, flow: AuthorizationCodeFlow, connection: Connection, idp: FakeIdP) -> None:
        idp.userinfo_status = 401
        idp.userinfo_body = {"error": "invalid_token"}
        target = flow.create_authorization_request(connection)

        with pytest.raises(UserInfoError) as exc_info:
            flow.process_callback(_callback(target, code="code-1"))
        assert exc_info.value.error_code == "invalid_token"

    def test_userinfo_disabled(
        self, make_flow: Callable[..., AuthorizationCodeFlow], connection: Connection, idp: FakeIdP
    ) -> None:
        flow = make_flow(userinfo_enabled=False)
        target = flow.create_authorization_request(connection)

        identity = flow.process_callback(_callback(target, code="code-1"))

        assert identity.userinfo is None
        assert idp.userinfo_requests == []

    def test_same_code_does_not_succeed_twice(
        self, flow: AuthorizationCodeFlow, connection: Connection
    ) -> None:
        target = flow.create_authorization_request(connection)
        request = _callback(target, code="code-1")
        flow.process_callback(request)

        with pytest.raises(TokenExchangeError):
            flow.process_callback(request)


class TestPkceCallback:
    """Tests for callbacks of PKCE flows."""

    def test_verifier_matches_challenge(
        self, make_flow: Callable[..., AuthorizationCodeFlow], connection: Connection, idp: FakeIdP
    ) -> None:
        flow = make_flow(pkce_enabled=True)
        target = flow.create_authorization_request(connection)
        idp.expected_code_challenge = _query(target.url)["code_challenge"][0]

        identity = flow.process_callback(_callback(target, code="code-1"))

        form = idp.form()
        cookies = {cookie.name: cookie.value for cookie in target.cookies}
        assert identity.subject == "user-1"
        assert form["code_verifier"] == cookies[COOKIE_NAME_CODE_VERIFIER]
        assert form["client_id"] == CLIENT_ID
        assert "Authorization" not in idp.token_requests[0].headers

    def test_substituted_verifier_is_rejected(
        self, make_flow: Callable[..., AuthorizationCodeFlow], connection: Connection, idp: FakeIdP
    ) -> None:
        flow = make_flow(pkce_enabled=True)
        target = flow.create_authorization_request(connection)
        idp.expected_code_challenge = _query(target.url)["code_challenge"][0]
        request = _callback(target, code="code-1")
        cookies = {**request.cookies, COOKIE_NAME_CODE_VERIFIER: generate_code_verifier()}

        with pytest.raises(TokenExchangeError) as exc_info:
            flow.process_callback(CallbackRequest(url=request.url, cookies=cookies))
        assert exc_info.value.error_code == "invalid_grant"

    def test_missing_verifier_cookie(
        self, make_flow: Callable[..., AuthorizationCodeFlow], connection: Connection, idp: FakeIdP
    ) -> None:
        flow = make_flow(pkce_enabled=True)
        target = flow.create_authorization_request(connection)
        request = _callback(target, code="code-1")
        cookies = {COOKIE_NAME_REQUEST_KEY: request.cookies[COOKIE_NAME_REQUEST_KEY]}

        with pytest.raises(MissingPkceCookie) as exc_info:
            flow.process_callback(CallbackRequest(url=request.url, cookies=cookies))
        assert exc_info.value.fatal
        assert idp.token_requests == []
