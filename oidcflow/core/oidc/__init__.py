"""OpenID Connect authorization code flow with PKCE."""

from oidcflow.core.oidc.models import (
    AuthorizationRequest,
    AuthorizationResponse,
    ProviderConfiguration,
    TokenResponse,
    UserInfoResponse,
)
from oidcflow.core.oidc.pkce import (
    PkcePair,
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_pkce,
    generate_state,
)
from oidcflow.core.oidc.validation import (
    IdTokenClaims,
    SigningKeyNotFoundError,
    validate_id_token,
)
from oidcflow.core.oidc.requests import (
    AuthorizeRequest,
    DiscoveryRequest,
    JwksRequest,
    RefreshTokenRequest,
    RevokeTokenRequest,
    TokenExchangeRequest,
    UserInfoRequest,
)
from oidcflow.core.oidc.discovery import ProviderResolver, discovery_url
from oidcflow.core.oidc.flows import (
    AuthenticationFlowEngine,
    AuthorizationFlow,
    Browser,
    FlowStatus,
)

__all__ = [
    # Models
    "AuthorizationRequest",
    "AuthorizationResponse",
    "ProviderConfiguration",
    "TokenResponse",
    "UserInfoResponse",
    # PKCE
    "PkcePair",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_nonce",
    "generate_pkce",
    "generate_state",
    # Validation
    "IdTokenClaims",
    "SigningKeyNotFoundError",
    "validate_id_token",
    # Requests
    "AuthorizeRequest",
    "DiscoveryRequest",
    "JwksRequest",
    "RefreshTokenRequest",
    "RevokeTokenRequest",
    "TokenExchangeRequest",
    "UserInfoRequest",
    # Discovery
    "ProviderResolver",
    "discovery_url",
    # Flows
    "AuthenticationFlowEngine",
    "AuthorizationFlow",
    "Browser",
    "FlowStatus",
]
