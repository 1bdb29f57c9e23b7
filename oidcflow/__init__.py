"""oidcflow - OAuth 2.0 / OpenID Connect authorization code client with PKCE."""

__version__ = "0.1.0"
