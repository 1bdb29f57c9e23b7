"""ID token validation.

Verifies the signature of an ID token against the provider's JWKS and checks
the standard OIDC claims. Validation is all-or-nothing: the first failing
check rejects the token with :class:`~oidcflow.core.errors.IdTokenValidationError`.
"""

from __future__ import annotations

import hmac
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import jwt
from jwt import PyJWK, PyJWKSet

from oidcflow.core.errors import IdTokenValidationError

# Asymmetric algorithms only; a public client holds no shared secret.
SECURE_ALGORITHMS = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",
        "ES256",
        "ES384",
        "ES512",
        "PS256",
        "PS384",
        "PS512",
        "EdDSA",
    }
)

REQUIRED_CLAIMS = ["iss", "sub", "aud", "exp", "iat"]


class SigningKeyNotFoundError(IdTokenValidationError):
    """No key in the JWKS matches the token header."""

    def __init__(self, kid: str | None) -> None:
        self.kid = kid
        super().__init__(f"no signing key found for kid={kid!r}")


@dataclass(frozen=True)
class IdTokenClaims:
    """Claims of a validated ID token."""

    claims: dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def subject(self) -> str:
        return self.claims["sub"]

    @property
    def issuer(self) -> str:
        return self.claims["iss"]

    @property
    def audience(self) -> list[str]:
        aud = self.claims["aud"]
        return list(aud) if isinstance(aud, list) else [aud]

    @property
    def nonce(self) -> str | None:
        return self.claims.get("nonce")

    @property
    def expiration(self) -> datetime:
        return datetime.fromtimestamp(self.claims["exp"], tz=UTC)

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.claims["iat"], tz=UTC)


def allowed_algorithms(provider_algorithms: Iterable[str] | None) -> list[str]:
    """Intersect provider-advertised algorithms with the secure set."""
    advertised = set(provider_algorithms or ["RS256"])
    return sorted(advertised & SECURE_ALGORITHMS)


def select_signing_key(signing_keys: PyJWKSet, kid: str | None) -> PyJWK:
    """Find the key referenced by ``kid``.

    Without a ``kid`` the token is accepted only when the set holds exactly
    one signing key.

    Raises:
        SigningKeyNotFoundError: If no key matches.
    """
    candidates = [k for k in signing_keys.keys if getattr(k, "public_key_use", None) in (None, "sig")]
    if kid is not None:
        for key in candidates:
            if key.key_id == kid:
                return key
        raise SigningKeyNotFoundError(kid)
    if len(candidates) == 1:
        return candidates[0]
    raise SigningKeyNotFoundError(kid)


def validate_id_token(
    id_token: str,
    nonce: str | None,
    issuer: str,
    audience: str,
    signing_keys: PyJWKSet,
    clock_skew_seconds: int = 120,
    provider_algorithms: Iterable[str] | None = None,
) -> IdTokenClaims:
    """Validate an ID token and return its claims.

    Args:
        id_token: Compact-serialized JWT.
        nonce: Expected nonce, or None when no nonce is bound (refresh).
        issuer: Expected ``iss`` (the resolved provider issuer).
        audience: Expected ``aud`` member (the client id).
        signing_keys: Provider JWKS.
        clock_skew_seconds: Tolerance applied to ``exp`` and ``iat``.
        provider_algorithms: ``id_token_signing_alg_values_supported``.

    Returns:
        IdTokenClaims of the validated token.

    Raises:
        SigningKeyNotFoundError: If the token's key is not in ``signing_keys``.
        IdTokenValidationError: If any other check fails.
    """
    try:
        header = jwt.get_unverified_header(id_token)
    except jwt.exceptions.DecodeError as e:
        raise IdTokenValidationError(f"malformed token: {e}") from e

    alg = header.get("alg")
    algorithms = allowed_algorithms(provider_algorithms)
    if alg not in algorithms:
        raise IdTokenValidationError(f"algorithm {alg!r} is not allowed")

    key = select_signing_key(signing_keys, header.get("kid"))

    try:
        claims: dict[str, Any] = jwt.decode(
            id_token,
            key.key,
            algorithms=[alg],
            audience=audience,
            issuer=issuer,
            leeway=clock_skew_seconds,
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.exceptions.InvalidSignatureError as e:
        raise IdTokenValidationError("signature verification failed") from e
    except jwt.exceptions.ExpiredSignatureError as e:
        raise IdTokenValidationError("token has expired") from e
    except jwt.exceptions.ImmatureSignatureError as e:
        raise IdTokenValidationError("token issued in the future") from e
    except jwt.exceptions.InvalidIssuerError as e:
        raise IdTokenValidationError("issuer mismatch") from e
    except jwt.exceptions.InvalidAudienceError as e:
        raise IdTokenValidationError("audience mismatch") from e
    except jwt.exceptions.MissingRequiredClaimError as e:
        raise IdTokenValidationError(f"missing claim '{e.claim}'") from e
    except jwt.exceptions.InvalidTokenError as e:
        raise IdTokenValidationError(f"invalid token: {e}") from e

    issued_at = claims["iat"]
    if isinstance(issued_at, (int, float)) and issued_at > datetime.now(UTC).timestamp() + clock_skew_seconds:
        raise IdTokenValidationError("token issued in the future")

    aud = claims["aud"]
    azp = claims.get("azp")
    if isinstance(aud, list) and len(aud) > 1 and azp is None:
        raise IdTokenValidationError("azp required when multiple audiences are present")
    if azp is not None and azp != audience:
        raise IdTokenValidationError("authorized party mismatch")

    if nonce is not None:
        token_nonce = claims.get("nonce")
        if not isinstance(token_nonce, str) or not hmac.compare_digest(token_nonce, nonce):
            raise IdTokenValidationError("nonce mismatch or missing")

    return IdTokenClaims(claims=claims)


def decode_unverified_claims(token: str) -> dict[str, Any]:
    """Decode JWT claims without verification.

    Only for inspecting tokens that were already validated on receipt.
    """
    try:
        result: dict[str, Any] = jwt.decode(token, options={"verify_signature": False})
    except jwt.exceptions.DecodeError as e:
        raise IdTokenValidationError(f"malformed token: {e}") from e
    return result
