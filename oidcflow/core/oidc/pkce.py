"""PKCE, state and nonce generation.

RFC 7636 binds an authorization code to the client that requested it: a
high-entropy *code verifier* is kept by the client while a *code challenge*
derived from it travels in the authorization URL.

Nothing in this module logs verifiers, states or nonces.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from collections.abc import Iterable
from dataclasses import dataclass

S256 = "S256"
PLAIN = "plain"

# 64 random bytes -> 86 base64url characters (512 bits of entropy)
_VERIFIER_BYTES = 64
_OPAQUE_BYTES = 32


@dataclass(frozen=True)
class PkcePair:
    """Code verifier with its derived challenge."""

    verifier: str
    challenge: str
    method: str

    def __repr__(self) -> str:
        return f"PkcePair(method={self.method!r}, challenge={self.challenge!r}, verifier='****')"


def generate_code_verifier(num_bytes: int = _VERIFIER_BYTES) -> str:
    """Generate a PKCE code verifier.

    The verifier is a base64url string (no padding) built from ``num_bytes``
    cryptographically random bytes. RFC 7636 requires 43-128 characters.

    Args:
        num_bytes: Number of random bytes (32-96).

    Returns:
        URL-safe random string.

    Raises:
        ValueError: If the resulting length would fall outside 43-128.
    """
    if not 32 <= num_bytes <= 96:
        raise ValueError("code verifier must be built from 32-96 random bytes")
    return secrets.token_urlsafe(num_bytes)


def generate_code_challenge(code_verifier: str, method: str = S256) -> str:
    """Generate a PKCE code challenge from a code verifier.

    Args:
        code_verifier: The code verifier string.
        method: Challenge method - "S256" (recommended) or "plain".

    Returns:
        The code challenge string.

    Raises:
        ValueError: If method is not supported.
    """
    if method == PLAIN:
        return code_verifier
    if method == S256:
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    raise ValueError(f"Unsupported code_challenge_method: {method}")


def select_challenge_method(supported: Iterable[str] | None) -> str:
    """Pick the PKCE method for a provider.

    S256 is used unless the provider advertises a method list that lacks it
    but contains ``plain``. An empty or missing list means S256.
    """
    methods = list(supported or [])
    if not methods or S256 in methods:
        return S256
    if PLAIN in methods:
        return PLAIN
    return S256


def generate_pkce(supported_methods: Iterable[str] | None = None) -> PkcePair:
    """Generate a fresh verifier/challenge pair.

    Args:
        supported_methods: ``code_challenge_methods_supported`` from discovery.

    Returns:
        PkcePair for one authorization request.
    """
    method = select_challenge_method(supported_methods)
    verifier = generate_code_verifier()
    return PkcePair(
        verifier=verifier,
        challenge=generate_code_challenge(verifier, method),
        method=method,
    )


def generate_state() -> str:
    """Return a random, single-use ``state`` value."""
    return secrets.token_urlsafe(_OPAQUE_BYTES)


def generate_nonce() -> str:
    """Return a random, single-use OIDC ``nonce`` value."""
    return secrets.token_urlsafe(_OPAQUE_BYTES)
