"""OIDC relying-party flow implementations."""

from oidcrp.core.oidc.claims import (
    ClaimsProcessor,
    DefaultClaimsProcessor,
    OidcCredentials,
)
from oidcrp.core.oidc.client import (
    OIDCClient,
    TokenResponse,
    UserInfoResponse,
    generate_code_challenge,
    generate_code_verifier,
)
from oidcrp.core.oidc.connection import (
    Connection,
    ConnectionRegistry,
    resolve_connection,
)
from oidcrp.core.oidc.flows import (
    AuthorizationCodeFlow,
    CallbackContext,
    CallbackRequest,
    CallbackStatus,
    Cookie,
    RedirectTarget,
    VerifiedIdentity,
    entry_point_uri,
)
from oidcrp.core.oidc.lifecycle import (
    AccessTokenManager,
    StoredToken,
    TokenDecision,
    TokenState,
    TokenStore,
)
from oidcrp.core.oidc.state import OAuthState, StateCodec
from oidcrp.core.oidc.validation import (
    IDTokenClaims,
    JWKSManager,
    TokenValidationResult,
    TokenValidator,
    ValidationCheck,
    ValidationStatus,
    get_jwks_manager,
)

__all__ = [
    # Claims
    "ClaimsProcessor",
    "DefaultClaimsProcessor",
    "OidcCredentials",
    # Client
    "OIDCClient",
    "TokenResponse",
    "UserInfoResponse",
    "generate_code_challenge",
    "generate_code_verifier",
    # Connections
    "Connection",
    "ConnectionRegistry",
    "resolve_connection",
    # Flows
    "AuthorizationCodeFlow",
    "CallbackContext",
    "CallbackRequest",
    "CallbackStatus",
    "Cookie",
    "RedirectTarget",
    "VerifiedIdentity",
    "entry_point_uri",
    # Lifecycle
    "AccessTokenManager",
    "StoredToken",
    "TokenDecision",
    "TokenState",
    "TokenStore",
    # State
    "OAuthState",
    "StateCodec",
    # Validation
    "IDTokenClaims",
    "JWKSManager",
    "TokenValidationResult",
    "TokenValidator",
    "ValidationCheck",
    "ValidationStatus",
    "get_jwks_manager",
]
