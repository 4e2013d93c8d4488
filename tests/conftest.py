"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Generator
from typing import Any
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from flask import Flask
from flask.testing import FlaskClient
from jwt.exceptions import PyJWKClientConnectionError

from oidcrp.app import create_app
from oidcrp.core.config import AppConfig, HandlerSettings, StorageSettings
from oidcrp.core.logging import LoggingClient, ProtocolLogger
from oidcrp.core.oidc.claims import DefaultClaimsProcessor
from oidcrp.core.oidc.client import OIDCClient, generate_code_challenge
from oidcrp.core.oidc.connection import Connection, ConnectionRegistry, resolve_connection
from oidcrp.core.oidc.flows import AuthorizationCodeFlow
from oidcrp.core.oidc.state import StateCodec
from oidcrp.core.oidc.validation import JWKSManager

ISSUER = "https://idp.example.com"
CLIENT_ID = "abc"
CLIENT_SECRET = "s3cret"
KEY_ID = "test-key-1"
CALLBACK_URI = "https://rp.example.com/oidc/callback"
STATE_SECRET = "test-state-secret"

RAW_CONNECTION: dict[str, Any] = {
    "name": "demo",
    "authorization_endpoint": f"{ISSUER}/auth",
    "token_endpoint": f"{ISSUER}/token",
    "userinfo_endpoint": f"{ISSUER}/userinfo",
    "jwks_uri": f"{ISSUER}/jwks",
    "issuer": ISSUER,
    "client_id": CLIENT_ID,
    "client_secret": CLIENT_SECRET,
    "scopes": ["openid", "profile"],
}


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """RSA key the fake IdP signs ID tokens with."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    """RSA key that is not published in the JWKS."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    """JWKS document publishing the IdP's public key."""
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk.update({"kid": KEY_ID, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


class JWKSEndpoint:
    """The IdP's JWKS endpoint, answering in place of PyJWKClient.fetch_data."""

    def __init__(self, jwks: dict[str, Any]) -> None:
        self.jwks = jwks
        self.fetches = 0
        self.available = True

    def fetch_data(self) -> dict[str, Any]:
        self.fetches += 1
        if not self.available:
            raise PyJWKClientConnectionError('Fail to fetch data from the url, err: "HTTP Error 503"')
        return self.jwks


@pytest.fixture
def jwks_endpoint(jwks: dict[str, Any]) -> JWKSEndpoint:
    """JWKS endpoint publishing the IdP's keys."""
    return JWKSEndpoint(jwks)


@pytest.fixture
def jwks_manager(jwks_endpoint: JWKSEndpoint, monkeypatch: pytest.MonkeyPatch) -> JWKSManager:
    """JWKS manager fetching from the stubbed endpoint."""
    manager = JWKSManager(RAW_CONNECTION["jwks_uri"])
    monkeypatch.setattr(manager.jwks_client, "fetch_data", jwks_endpoint.fetch_data)
    return manager


@pytest.fixture
def make_id_token(rsa_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Build signed ID tokens.

    Keyword arguments override claims; a value of None removes the claim.
    ``key`` and ``headers`` replace the signing key and JWS header.
    """

    def _make(key: Any = None, headers: dict[str, Any] | None = None, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "sub": "user-1",
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + 300,
        }
        for name, value in overrides.items():
            if value is None:
                claims.pop(name, None)
            else:
                claims[name] = value
        return jwt.encode(
            claims,
            key or rsa_key,
            algorithm="RS256",
            headers={"kid": KEY_ID} if headers is None else headers,
        )

    return _make


class FakeIdP:
    """Token and userinfo endpoints of an identity provider, for MockTransport."""

    def __init__(self, make_id_token: Callable[..., str]) -> None:
        self.make_id_token = make_id_token
        self.token_requests: list[httpx.Request] = []
        self.userinfo_requests: list[httpx.Request] = []
        self.used_codes: set[str] = set()
        self.id_token_claims: dict[str, Any] = {}
        self.expected_code_challenge: str | None = None
        self.token_error: tuple[int, dict[str, Any]] | None = None
        self.token_exception: Exception | None = None
        self.userinfo_status = 200
        self.userinfo_body: dict[str, Any] = {
            "sub": "user-1",
            "name": "Test User",
            "email": "user@example.com",
        }
        self.refresh_count = 0

    def form(self, index: int = -1) -> dict[str, str]:
        return dict(parse_qsl(self.token_requests[index].content.decode()))

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            return self._token(request)
        if request.url.path == "/userinfo":
            self.userinfo_requests.append(request)
            return httpx.Response(self.userinfo_status, json=self.userinfo_body)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests.append(request)
        if self.token_exception is not None:
            raise self.token_exception
        if self.token_error is not None:
            status, body = self.token_error
            return httpx.Response(status, json=body)

        form = dict(parse_qsl(request.content.decode()))
        if form.get("grant_type") == "refresh_token":
            self.refresh_count += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"refreshed-access-{self.refresh_count}",
                    "token_type": "Bearer",
                    "expires_in": 3600,
                },
            )

        code = form.get("code", "")
        if code in self.used_codes:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code already used"})
        if self.expected_code_challenge is not None:
            verifier = form.get("code_verifier", "")
            if not verifier or generate_code_challenge(verifier) != self.expected_code_challenge:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE failed"})
        self.used_codes.add(code)

        return httpx.Response(
            200,
            json={
                "access_token": "access-1",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "refresh-1",
                "id_token": self.make_id_token(**self.id_token_claims),
            },
        )


@pytest.fixture
def idp(make_id_token: Callable[..., str]) -> FakeIdP:
    """Fake identity provider."""
    return FakeIdP(make_id_token)


@pytest.fixture
def oidc_client(idp: FakeIdP) -> Generator[OIDCClient, None, None]:
    """OIDC client talking to the fake IdP."""
    protocol_logger = ProtocolLogger()
    http_client = LoggingClient(protocol_logger=protocol_logger, transport=httpx.MockTransport(idp.handler))
    client = OIDCClient(protocol_logger=protocol_logger, http_client=http_client)
    yield client
    client.close()


@pytest.fixture
def connection() -> Connection:
    """The demo connection."""
    return resolve_connection(RAW_CONNECTION)


@pytest.fixture
def registry(connection: Connection) -> ConnectionRegistry:
    """Registry holding the demo connection."""
    return ConnectionRegistry([connection])


@pytest.fixture
def state_codec() -> StateCodec:
    """State codec with a fixed secret."""
    return StateCodec(STATE_SECRET)


@pytest.fixture
def make_flow(
    registry: ConnectionRegistry,
    state_codec: StateCodec,
    oidc_client: OIDCClient,
    jwks_manager: JWKSManager,
) -> Callable[..., AuthorizationCodeFlow]:
    """Build flows wired to the fake IdP."""

    def _make(**kwargs: Any) -> AuthorizationCodeFlow:
        return AuthorizationCodeFlow(
            registry=registry,
            state_codec=state_codec,
            callback_uri=CALLBACK_URI,
            claims_processor=kwargs.pop("claims_processor", DefaultClaimsProcessor()),
            client=oidc_client,
            jwks_provider=lambda uri: jwks_manager,
            **kwargs,
        )

    return _make


@pytest.fixture
def flow(make_flow: Callable[..., AuthorizationCodeFlow]) -> AuthorizationCodeFlow:
    """Flow with PKCE disabled and userinfo enabled."""
    return make_flow()


@pytest.fixture
def app_config() -> AppConfig:
    """Application configuration for the demo connection."""
    return AppConfig(
        handler=HandlerSettings(
            callback_uri=CALLBACK_URI,
            default_redirect="/home",
            default_connection="demo",
            state_secret=STATE_SECRET,
        ),
        storage=StorageSettings(database_url="sqlite://"),
        connections=[dict(RAW_CONNECTION)],
    )


@pytest.fixture
def app(app_config: AppConfig, oidc_client: OIDCClient, jwks_manager: JWKSManager) -> Generator[Flask, None, None]:
    """Create application for testing against the fake IdP."""
    app = create_app(
        app_config,
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
        },
        oidc_client=oidc_client,
        jwks_provider=lambda uri: jwks_manager,
    )
    yield app
    app.config["OIDC_DATABASE"].close()


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
