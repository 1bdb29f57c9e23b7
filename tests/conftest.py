"""Pytest configuration and fixtures.

The fake provider below implements just enough of an OpenID Provider
(discovery, JWKS, token, revocation and userinfo endpoints) on top of
``httpx.MockTransport`` to drive real flows end to end.
"""

from __future__ import annotations

import base64
import hashlib
import json
import threading
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from oidcflow.core.config import ClientConfig
from oidcflow.core.logging import ProtocolLogger
from oidcflow.core.oidc.flows import AuthenticationFlowEngine
from oidcflow.core.transport import HttpxTransport
from oidcflow.storage.secure_store import InMemorySecureStore
from oidcflow.storage.state_store import AuthStateStore

ISSUER = "https://idp.example.com"
CLIENT_ID = "test-client"
REDIRECT_URI = "http://127.0.0.1:8765/callback"
SUBJECT = "user-123"


def generate_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwk(private_key: rsa.RSAPrivateKey, kid: str) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


def sign_id_token(
    private_key: rsa.RSAPrivateKey,
    kid: str,
    **overrides: Any,
) -> str:
    """Sign an ID token; pass ``claim=None`` to drop a claim."""
    now = datetime.now(UTC)
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "sub": SUBJECT,
        "aud": CLIENT_ID,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=5)).timestamp()),
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


class FakeProvider:
    """In-process OpenID Provider."""

    def __init__(self) -> None:
        self.private_key = generate_rsa_key()
        self.kid = "key-1"
        self.jwks_keys = [public_jwk(self.private_key, self.kid)]
        self.discovery: dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "revocation_endpoint": f"{ISSUER}/revoke",
            "end_session_endpoint": f"{ISSUER}/logout",
            "id_token_signing_alg_values_supported": ["RS256"],
            "code_challenge_methods_supported": ["S256"],
        }

        self.requests: list[httpx.Request] = []
        self.authorizations: dict[str, dict[str, str]] = {}
        self.access_token = "access-1"
        self.refresh_token = "refresh-1"
        self.issued = 0

        # Knobs for individual tests
        self.token_error: dict[str, Any] | None = None
        self.refresh_error: dict[str, Any] | None = None
        self.id_token_claims: dict[str, Any] = {}
        self.omit_id_token = False
        self.rotate_refresh_token = False
        self.refresh_id_token_claims: dict[str, Any] | None = None
        self.refresh_gate: threading.Event | None = None
        self.revoke_response: tuple[int, dict[str, Any] | None] = (200, None)
        self.fail_paths: set[str] = set()

    # Browser side

    def authorize(self, authorize_url: str) -> str:
        """Act as the user approving consent; return the redirect URL."""
        params = dict(parse_qsl(urlsplit(authorize_url).query))
        code = f"code-{len(self.authorizations) + 1}"
        self.authorizations[code] = params
        return f"{params['redirect_uri']}?{urlencode({'code': code, 'state': params['state']})}"

    # Helpers

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def id_token(self, **overrides: Any) -> str:
        return sign_id_token(self.private_key, self.kid, **overrides)

    def rotate_key(self) -> None:
        """Replace the signing key, publishing only the new one."""
        self.private_key = generate_rsa_key()
        self.kid = f"key-{len(self.jwks_keys) + 1}"
        self.jwks_keys = [public_jwk(self.private_key, self.kid)]

    def _token_body(self, nonce: str | None, include_refresh: bool, claims: dict[str, Any]) -> dict[str, Any]:
        self.issued += 1
        self.access_token = f"access-{self.issued}"
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid profile email offline_access",
        }
        if include_refresh:
            self.refresh_token = f"refresh-{self.issued}"
            body["refresh_token"] = self.refresh_token
        if not self.omit_id_token and claims is not None:
            body["id_token"] = self.id_token(**{"nonce": nonce, **claims})
        return body

    # HTTP side

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.fail_paths:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery)
        if path == "/jwks":
            return httpx.Response(200, json={"keys": self.jwks_keys})
        if path == "/token":
            return self._token(request)
        if path == "/revoke":
            status, body = self.revoke_response
            return httpx.Response(status, json=body) if body is not None else httpx.Response(status)
        if path == "/userinfo":
            if request.headers.get("Authorization") != f"Bearer {self.access_token}":
                return httpx.Response(401, headers={"WWW-Authenticate": 'Bearer error="invalid_token"'})
            return httpx.Response(
                200,
                json={"sub": SUBJECT, "name": "Test User", "email": "user@example.com", "email_verified": True},
            )
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "authorization_code":
            if self.token_error is not None:
                return httpx.Response(400, json=self.token_error)
            params = self.authorizations.pop(form.get("code", ""), None)
            if params is None or form.get("client_id") != CLIENT_ID:
                return httpx.Response(400, json={"error": "invalid_grant"})
            digest = hashlib.sha256(form.get("code_verifier", "").encode("ascii")).digest()
            challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
            if challenge != params["code_challenge"]:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE mismatch"})
            return httpx.Response(200, json=self._token_body(params.get("nonce"), True, self.id_token_claims))

        if form.get("grant_type") == "refresh_token":
            if self.refresh_gate is not None:
                self.refresh_gate.wait(timeout=5)
            if self.refresh_error is not None:
                return httpx.Response(400, json=self.refresh_error)
            if form.get("refresh_token") != self.refresh_token:
                return httpx.Response(400, json={"error": "invalid_grant"})
            claims = self.refresh_id_token_claims
            return httpx.Response(200, json=self._token_body(None, self.rotate_refresh_token, claims))

        return httpx.Response(400, json={"error": "unsupported_grant_type"})


class FakeBrowser:
    """Browser collaborator that approves (or cancels) immediately."""

    def __init__(self, provider: FakeProvider, cancel: bool = False) -> None:
        self.provider = provider
        self.cancel = cancel
        self.opened: list[tuple[str, str]] = []

    def open(self, authorize_url: str, redirect_uri_prefix: str) -> str | None:
        self.opened.append((authorize_url, redirect_uri_prefix))
        if self.cancel:
            return None
        return self.provider.authorize(authorize_url)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def protocol_logger() -> ProtocolLogger:
    return ProtocolLogger()


@pytest.fixture
def transport(fake_provider: FakeProvider, protocol_logger: ProtocolLogger) -> Generator[HttpxTransport, None, None]:
    http = HttpxTransport(protocol_logger=protocol_logger, transport=httpx.MockTransport(fake_provider.handler))
    yield http
    http.close()


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(client_id=CLIENT_ID, redirect_uri=REDIRECT_URI, issuer=ISSUER)


@pytest.fixture
def secure_store() -> InMemorySecureStore:
    return InMemorySecureStore()


@pytest.fixture
def store(secure_store: InMemorySecureStore) -> AuthStateStore:
    return AuthStateStore(secure_store)


@pytest.fixture
def engine(
    client_config: ClientConfig,
    store: AuthStateStore,
    transport: HttpxTransport,
    protocol_logger: ProtocolLogger,
) -> AuthenticationFlowEngine:
    return AuthenticationFlowEngine(client_config, store, transport=transport, protocol_logger=protocol_logger)


@pytest.fixture
def browser(fake_provider: FakeProvider) -> FakeBrowser:
    return FakeBrowser(fake_provider)


@pytest.fixture
def signed_in(engine: AuthenticationFlowEngine, browser: FakeBrowser) -> AuthenticationFlowEngine:
    """Engine that has completed one login."""
    engine.sign_in(browser)
    return engine
