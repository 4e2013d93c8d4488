"""oidcrp - OAuth2/OIDC relying party with PKCE and token lifecycle management."""

__version__ = "0.1.0"
