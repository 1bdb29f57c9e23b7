"""Tests for the typed request layer."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlsplit

import pytest

from oidcflow.core.errors import (
    AuthorizationException,
    DiscoveryError,
    HttpResponseError,
    InvalidAccessTokenError,
    InvalidGrantError,
    NetworkError,
    ResponseParseError,
)
from oidcflow.core.oidc.models import AuthorizationRequest, ProviderConfiguration, TokenResponse
from oidcflow.core.oidc.pkce import generate_pkce
from oidcflow.core.oidc.requests import (
    AuthorizeRequest,
    JwksRequest,
    RefreshTokenRequest,
    RevokeTokenRequest,
    TokenExchangeRequest,
    UserInfoRequest,
)
from oidcflow.core.transport import HttpResponse

PROVIDER = ProviderConfiguration(
    issuer="https://idp.example.com",
    authorization_endpoint="https://idp.example.com/authorize",
    token_endpoint="https://idp.example.com/token",
    jwks_uri="https://idp.example.com/jwks",
    userinfo_endpoint="https://idp.example.com/userinfo",
    revocation_endpoint="https://idp.example.com/revoke",
)


class StubTransport:
    """Returns queued responses and records every call."""

    def __init__(self, *responses: HttpResponse | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def execute(self, method, url, headers=None, body=None, timeout=None) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "body": body})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def form(self, index: int = -1) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(self.calls[index]["body"]).items()}


def json_response(status: int, data: Any, content_type: str = "application/json") -> HttpResponse:
    return HttpResponse(status, {"Content-Type": content_type}, json.dumps(data))


def token_body(**overrides: Any) -> dict[str, Any]:
    body = {"access_token": "at", "token_type": "Bearer", "expires_in": 3600, "refresh_token": "rt"}
    body.update(overrides)
    return {k: v for k, v in body.items() if v is not None}


def _authorization_request() -> AuthorizationRequest:
    pkce = generate_pkce()
    return AuthorizationRequest(
        flow_id="flow-1",
        client_id="client",
        redirect_uri="http://127.0.0.1/cb",
        scopes=("openid", "email"),
        state="state-1",
        nonce="nonce-1",
        code_verifier=pkce.verifier,
        code_challenge=pkce.challenge,
        code_challenge_method=pkce.method,
    )


class TestAuthorizeRequest:
    """Tests for authorization URL construction."""

    def test_url_parameters(self) -> None:
        """Test every required parameter is present and the verifier is not."""
        request = _authorization_request()
        url = AuthorizeRequest(PROVIDER, request).url
        params = dict(parse_qsl(urlsplit(url).query))

        assert url.startswith("https://idp.example.com/authorize?")
        assert params == {
            "response_type": "code",
            "client_id": "client",
            "redirect_uri": "http://127.0.0.1/cb",
            "scope": "openid email",
            "state": "state-1",
            "nonce": "nonce-1",
            "code_challenge": request.code_challenge,
            "code_challenge_method": "S256",
        }
        assert request.code_verifier not in url

    def test_deterministic(self) -> None:
        """Test the same inputs yield the same URL."""
        request = _authorization_request()
        assert AuthorizeRequest(PROVIDER, request).url == AuthorizeRequest(PROVIDER, request).url

    def test_extra_params_cannot_override_protocol_params(self) -> None:
        """Test extra parameters are added but never replace core ones."""
        request = _authorization_request()
        url = AuthorizeRequest(PROVIDER, request, {"prompt": "login", "state": "forged"}).url
        params = dict(parse_qsl(urlsplit(url).query))
        assert params["prompt"] == "login"
        assert params["state"] == "state-1"

    def test_existing_query_preserved(self) -> None:
        """Test endpoints that already carry a query string."""
        provider = ProviderConfiguration(
            issuer=PROVIDER.issuer,
            authorization_endpoint="https://idp.example.com/authorize?tenant=acme",
            token_endpoint=PROVIDER.token_endpoint,
            jwks_uri=PROVIDER.jwks_uri,
        )
        params = parse_qs(urlsplit(AuthorizeRequest(provider, _authorization_request()).url).query)
        assert params["tenant"] == ["acme"]
        assert params["state"] == ["state-1"]


class TestTokenExchangeRequest:
    """Tests for the authorization code exchange."""

    def _request(self, **kwargs: Any) -> TokenExchangeRequest:
        return TokenExchangeRequest(
            provider=PROVIDER,
            client_id="client",
            redirect_uri="http://127.0.0.1/cb",
            code="code-1",
            code_verifier="verifier-1",
            **kwargs,
        )

    def test_success(self) -> None:
        """Test the form body and parsed tokens."""
        transport = StubTransport(json_response(200, token_body(id_token="idt", scope="openid")))
        before = datetime.now(UTC)

        tokens = self._request().execute(transport)

        call = transport.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == PROVIDER.token_endpoint
        assert call["headers"]["Content-Type"].startswith("application/x-www-form-urlencoded")
        assert transport.form() == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": "http://127.0.0.1/cb",
            "code_verifier": "verifier-1",
            "client_id": "client",
        }
        assert tokens.access_token == "at"
        assert tokens.refresh_token == "rt"
        assert tokens.id_token == "idt"
        assert tokens.scope == "openid"
        assert before + timedelta(seconds=3600) <= tokens.expires_at <= datetime.now(UTC) + timedelta(seconds=3600)

    def test_client_secret_post(self) -> None:
        """Test confidential clients send their secret in the body."""
        transport = StubTransport(json_response(200, token_body()))
        self._request(client_secret="s3cret").execute(transport)
        assert transport.form()["client_secret"] == "s3cret"

    def test_invalid_client(self) -> None:
        """Test a structured error becomes AuthorizationException."""
        transport = StubTransport(
            json_response(401, {"error": "invalid_client", "error_description": "Client authentication failed"})
        )
        with pytest.raises(AuthorizationException) as exc_info:
            self._request().execute(transport)
        assert exc_info.value.code == "invalid_client"
        assert exc_info.value.description == "Client authentication failed"

    def test_error_body_with_200_status(self) -> None:
        """Test an error body is never treated as success."""
        transport = StubTransport(json_response(200, {"error": "invalid_request"}))
        with pytest.raises(AuthorizationException) as exc_info:
            self._request().execute(transport)
        assert exc_info.value.code == "invalid_request"

    def test_http_error_without_body(self) -> None:
        """Test a plain 500 is an HttpResponseError."""
        transport = StubTransport(HttpResponse(500, {"Content-Type": "text/html"}, "<html>oops</html>"))
        with pytest.raises(HttpResponseError) as exc_info:
            self._request().execute(transport)
        assert exc_info.value.status_code == 500

    def test_network_error_propagates(self) -> None:
        """Test transport failures pass through untouched."""
        transport = StubTransport(NetworkError("connection refused"))
        with pytest.raises(NetworkError):
            self._request().execute(transport)

    @pytest.mark.parametrize(
        "response",
        [
            HttpResponse(200, {"Content-Type": "text/plain"}, "access_token=at"),
            HttpResponse(200, {"Content-Type": "application/json"}, "{not json"),
            HttpResponse(200, {"Content-Type": "application/json"}, "[]"),
            json_response(200, token_body(access_token=None)),
            json_response(200, token_body(token_type=None)),
            json_response(200, token_body(expires_in="soon")),
            json_response(200, token_body(access_token=42)),
        ],
    )
    def test_malformed_success(self, response: HttpResponse) -> None:
        """Test malformed bodies never yield a partial token set."""
        with pytest.raises(ResponseParseError):
            self._request().execute(StubTransport(response))

    def test_exactly_one_attempt(self) -> None:
        """Test no retry happens on failure."""
        transport = StubTransport(NetworkError("timeout"), json_response(200, token_body()))
        with pytest.raises(NetworkError):
            self._request().execute(transport)
        assert len(transport.calls) == 1


class TestRefreshTokenRequest:
    """Tests for the refresh grant (mirrors the provider error contract)."""

    def _request(self) -> RefreshTokenRequest:
        return RefreshTokenRequest(provider=PROVIDER, client_id="client", refresh_token="rt-old")

    def test_success_without_new_refresh_token(self) -> None:
        """Test a response without refresh_token parses with None."""
        transport = StubTransport(json_response(200, token_body(refresh_token=None)))
        tokens = self._request().execute(transport)

        assert transport.form() == {"grant_type": "refresh_token", "refresh_token": "rt-old", "client_id": "client"}
        assert tokens.refresh_token is None

    def test_invalid_grant(self) -> None:
        """Test invalid_grant gets its own exception type."""
        transport = StubTransport(json_response(400, {"error": "invalid_grant", "error_description": "revoked"}))
        with pytest.raises(InvalidGrantError) as exc_info:
            self._request().execute(transport)
        assert exc_info.value.code == "invalid_grant"

    def test_invalid_client(self) -> None:
        """Test other OAuth errors stay AuthorizationException."""
        transport = StubTransport(json_response(400, {"error": "invalid_client"}))
        with pytest.raises(AuthorizationException) as exc_info:
            self._request().execute(transport)
        assert not isinstance(exc_info.value, InvalidGrantError)
        assert exc_info.value.code == "invalid_client"

    def test_scopes_sent_when_given(self) -> None:
        """Test a down-scoped refresh."""
        transport = StubTransport(json_response(200, token_body()))
        RefreshTokenRequest(PROVIDER, "client", "rt", scopes=("openid",)).execute(transport)
        assert transport.form()["scope"] == "openid"


class TestRevokeTokenRequest:
    """Tests for token revocation."""

    def _request(self) -> RevokeTokenRequest:
        return RevokeTokenRequest(provider=PROVIDER, client_id="client", token="rt")

    def test_success(self) -> None:
        """Test a 200 response."""
        transport = StubTransport(HttpResponse(200))
        assert self._request().execute(transport) is True
        assert transport.form() == {"token": "rt", "token_type_hint": "refresh_token", "client_id": "client"}

    @pytest.mark.parametrize(
        "body",
        [
            {"error": "invalid_token"},
            {"error": "token_not_found"},
            {"error": "invalid_request", "error_description": "Token not found"},
        ],
    )
    def test_already_revoked_is_success(self, body: dict[str, str]) -> None:
        """Test revocation is idempotent."""
        assert self._request().execute(StubTransport(json_response(400, body))) is True

    def test_other_provider_error(self) -> None:
        """Test other refusals are reported as False rather than raised."""
        assert self._request().execute(StubTransport(json_response(400, {"error": "unauthorized_client"}))) is False

    def test_network_error_raises(self) -> None:
        """Test transport failure is the only error raised."""
        with pytest.raises(NetworkError):
            self._request().execute(StubTransport(NetworkError("down")))

    def test_no_endpoint(self) -> None:
        """Test providers without revocation support."""
        provider = ProviderConfiguration(
            issuer=PROVIDER.issuer,
            authorization_endpoint=PROVIDER.authorization_endpoint,
            token_endpoint=PROVIDER.token_endpoint,
            jwks_uri=PROVIDER.jwks_uri,
        )
        with pytest.raises(DiscoveryError):
            RevokeTokenRequest(provider, "client", "rt").execute(StubTransport())


class TestUserInfoRequest:
    """Tests for the userinfo request."""

    def test_success(self) -> None:
        """Test bearer auth and claim parsing."""
        transport = StubTransport(json_response(200, {"sub": "u1", "email": "u1@example.com"}))
        profile = UserInfoRequest(PROVIDER, "at").execute(transport)

        assert transport.calls[0]["method"] == "GET"
        assert transport.calls[0]["headers"]["Authorization"] == "Bearer at"
        assert profile.sub == "u1"
        assert profile.email == "u1@example.com"

    def test_unauthorized_is_distinct(self) -> None:
        """Test 401 raises InvalidAccessTokenError."""
        with pytest.raises(InvalidAccessTokenError):
            UserInfoRequest(PROVIDER, "stale").execute(StubTransport(HttpResponse(401)))

    def test_other_http_error(self) -> None:
        """Test 403 is a generic HTTP error, not a stale-token error."""
        with pytest.raises(HttpResponseError) as exc_info:
            UserInfoRequest(PROVIDER, "at").execute(StubTransport(HttpResponse(403)))
        assert not isinstance(exc_info.value, InvalidAccessTokenError)

    def test_missing_sub(self) -> None:
        """Test sub is mandatory."""
        with pytest.raises(ResponseParseError):
            UserInfoRequest(PROVIDER, "at").execute(StubTransport(json_response(200, {"email": "x"})))


class TestJwksRequest:
    """Tests for JWKS parsing."""

    def test_missing_keys(self) -> None:
        """Test a document without keys."""
        with pytest.raises(ResponseParseError):
            JwksRequest(PROVIDER.jwks_uri).execute(StubTransport(json_response(200, {"foo": []})))

    def test_no_usable_keys(self) -> None:
        """Test a set with only unknown key types."""
        body = {"keys": [{"kty": "unknown", "kid": "x"}]}
        with pytest.raises(ResponseParseError):
            JwksRequest(PROVIDER.jwks_uri).execute(StubTransport(json_response(200, body)))


class TestTokenResponse:
    """Tests for token set helpers."""

    def test_merged_with_keeps_refresh_token(self) -> None:
        """Test an omitted refresh token is retained."""
        old = TokenResponse(access_token="a1", token_type="Bearer", refresh_token="r1")
        new = TokenResponse(access_token="a2", token_type="Bearer")
        merged = new.merged_with(old)
        assert merged.access_token == "a2"
        assert merged.refresh_token == "r1"

    def test_merged_with_prefers_new_refresh_token(self) -> None:
        """Test a rotated refresh token replaces the old one."""
        old = TokenResponse(access_token="a1", token_type="Bearer", refresh_token="r1")
        new = TokenResponse(access_token="a2", token_type="Bearer", refresh_token="r2")
        assert new.merged_with(old).refresh_token == "r2"

    def test_is_expired(self) -> None:
        """Test expiry with leeway."""
        now = datetime.now(UTC)
        tokens = TokenResponse(access_token="a", token_type="Bearer", expires_at=now + timedelta(seconds=30))
        assert not tokens.is_expired(now=now)
        assert tokens.is_expired(leeway_seconds=60, now=now)
        assert not TokenResponse(access_token="a", token_type="Bearer").is_expired()

    def test_repr_hides_tokens(self) -> None:
        """Test secrets do not leak through repr."""
        tokens = TokenResponse(access_token="secret-at", token_type="Bearer", refresh_token="secret-rt")
        assert "secret-at" not in repr(tokens)
        assert "secret-rt" not in repr(tokens)
