"""Typed requests against provider endpoints.

Each request is a small value object whose ``execute`` method performs exactly
one HTTP attempt through an :class:`~oidcflow.core.transport.HttpTransport`
and returns a validated result or raises a typed
:class:`~oidcflow.core.errors.OIDCError`. Retrying is left to callers.

:class:`AuthorizeRequest` is the exception: it only builds the URL handed to
the browser and is never executed over HTTP.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from jwt import PyJWKSet
from jwt.exceptions import PyJWKSetError

from oidcflow.core.errors import (
    AuthorizationException,
    DiscoveryError,
    HttpResponseError,
    InvalidAccessTokenError,
    ResponseParseError,
)
from oidcflow.core.oidc.models import (
    AuthorizationRequest,
    ProviderConfiguration,
    TokenResponse,
    UserInfoResponse,
)
from oidcflow.core.transport import HttpResponse, HttpTransport

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPES = frozenset({"application/json", "application/jwk-set+json"})

_FORM_HEADERS = {
    "Content-Type": f"{FORM_CONTENT_TYPE};charset=UTF-8",
    "Accept": "application/json",
}


def _is_json(response: HttpResponse) -> bool:
    content_type = response.content_type
    return content_type in JSON_CONTENT_TYPES or content_type.endswith("+json")


def parse_json_body(response: HttpResponse, source: str) -> dict[str, Any]:
    """Decode a JSON object body after checking the content type.

    Raises:
        ResponseParseError: If the body is not a JSON object.
    """
    if not _is_json(response):
        raise ResponseParseError(
            f"{source} returned unexpected content type '{response.content_type or 'none'}'"
        )
    try:
        data = json.loads(response.body)
    except ValueError as e:
        raise ResponseParseError(f"{source} returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ResponseParseError(f"{source} returned JSON that is not an object")
    return data


def _error_body(response: HttpResponse) -> dict[str, Any] | None:
    """Return a structured OAuth error body, if the response carries one."""
    if not _is_json(response):
        return None
    try:
        data = json.loads(response.body)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data
    return None


def _raise_for_error(response: HttpResponse, source: str) -> None:
    error = _error_body(response)
    if error is not None:
        raise AuthorizationException.from_response(error)
    if not response.is_success:
        raise HttpResponseError(response.status_code, f"{source} failed with status {response.status_code}")


def _client_auth(params: dict[str, str], client_id: str, client_secret: str | None) -> dict[str, str]:
    params["client_id"] = client_id
    if client_secret:
        params["client_secret"] = client_secret
    return params


def _execute_token_request(
    transport: HttpTransport,
    endpoint: str,
    params: dict[str, str],
    source: str,
    timeout: float | None,
) -> TokenResponse:
    response = transport.execute(
        "POST",
        endpoint,
        headers=_FORM_HEADERS,
        body=urlencode(params),
        timeout=timeout,
    )
    received_at = datetime.now(UTC)
    _raise_for_error(response, source)
    return TokenResponse.from_response(parse_json_body(response, source), received_at=received_at)


@dataclass(frozen=True)
class AuthorizeRequest:
    """Builds the authorization URL for the browser collaborator."""

    provider: ProviderConfiguration
    request: AuthorizationRequest
    extra_params: Mapping[str, str] = field(default_factory=dict)

    def params(self) -> dict[str, str]:
        """Query parameters in a fixed order. The code verifier is never included."""
        params = {
            "response_type": self.request.response_type,
            "client_id": self.request.client_id,
            "redirect_uri": self.request.redirect_uri,
            "scope": " ".join(self.request.scopes),
            "state": self.request.state,
            "nonce": self.request.nonce,
            "code_challenge": self.request.code_challenge,
            "code_challenge_method": self.request.code_challenge_method,
        }
        for key, value in self.extra_params.items():
            params.setdefault(key, value)
        return params

    @property
    def url(self) -> str:
        """The full authorization URL, preserving any query already on the endpoint."""
        parts = urlsplit(self.provider.authorization_endpoint)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.extend(self.params().items())
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), ""))


@dataclass(frozen=True)
class TokenExchangeRequest:
    """Exchanges an authorization code (plus PKCE verifier) for tokens."""

    provider: ProviderConfiguration
    client_id: str
    redirect_uri: str
    code: str
    code_verifier: str
    client_secret: str | None = field(default=None, repr=False)

    def execute(self, transport: HttpTransport, timeout: float | None = None) -> TokenResponse:
        """POST ``grant_type=authorization_code`` to the token endpoint.

        Raises:
            NetworkError: On transport failure.
            AuthorizationException: If the provider returns an OAuth error.
            HttpResponseError: On other non-success responses.
            ResponseParseError: If the success body is malformed.
        """
        params = _client_auth(
            {
                "grant_type": "authorization_code",
                "code": self.code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": self.code_verifier,
            },
            self.client_id,
            self.client_secret,
        )
        tokens = _execute_token_request(
            transport, self.provider.token_endpoint, params, "Token exchange", timeout
        )
        logger.info(f"Exchanged authorization code at {self.provider.token_endpoint}")
        return tokens


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Obtains a new token set with a refresh token."""

    provider: ProviderConfiguration
    client_id: str
    refresh_token: str = field(repr=False)
    scopes: tuple[str, ...] = ()
    client_secret: str | None = field(default=None, repr=False)

    def execute(self, transport: HttpTransport, timeout: float | None = None) -> TokenResponse:
        """POST ``grant_type=refresh_token`` to the token endpoint.

        The returned token set may lack a refresh token; merging with the
        previous one is the caller's job.

        Raises:
            NetworkError: On transport failure.
            InvalidGrantError: If the refresh token was revoked or expired.
            AuthorizationException: For any other OAuth error.
            HttpResponseError: On other non-success responses.
            ResponseParseError: If the success body is malformed.
        """
        params = {"grant_type": "refresh_token", "refresh_token": self.refresh_token}
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        params = _client_auth(params, self.client_id, self.client_secret)
        tokens = _execute_token_request(
            transport, self.provider.token_endpoint, params, "Token refresh", timeout
        )
        logger.info(f"Refreshed tokens at {self.provider.token_endpoint}")
        return tokens


@dataclass(frozen=True)
class RevokeTokenRequest:
    """Revokes an access or refresh token (RFC 7009)."""

    provider: ProviderConfiguration
    client_id: str
    token: str = field(repr=False)
    token_type_hint: str = "refresh_token"
    client_secret: str | None = field(default=None, repr=False)

    # Provider error codes that mean the token is already gone.
    ALREADY_REVOKED_ERRORS = frozenset({"invalid_token", "token_not_found"})

    def execute(self, transport: HttpTransport, timeout: float | None = None) -> bool:
        """POST the token to the revocation endpoint.

        Returns:
            True if the token is revoked (or was already unknown to the
            provider), False if the provider refused for another reason.

        Raises:
            DiscoveryError: If the provider publishes no revocation endpoint.
            NetworkError: On transport failure.
        """
        endpoint = self.provider.revocation_endpoint
        if not endpoint:
            raise DiscoveryError("Provider does not publish a revocation endpoint")

        params = _client_auth(
            {"token": self.token, "token_type_hint": self.token_type_hint},
            self.client_id,
            self.client_secret,
        )
        response = transport.execute(
            "POST", endpoint, headers=_FORM_HEADERS, body=urlencode(params), timeout=timeout
        )
        if response.is_success:
            return True

        error = _error_body(response)
        if error is not None and (
            error["error"] in self.ALREADY_REVOKED_ERRORS
            or "not found" in str(error.get("error_description", "")).lower()
        ):
            logger.debug(f"Token already revoked ({error['error']})")
            return True

        logger.warning(
            f"Revocation of {self.token_type_hint} refused with status {response.status_code}"
            + (f" ({error['error']})" if error else "")
        )
        return False


@dataclass(frozen=True)
class UserInfoRequest:
    """Fetches claims about the signed-in user."""

    provider: ProviderConfiguration
    access_token: str = field(repr=False)

    def execute(self, transport: HttpTransport, timeout: float | None = None) -> UserInfoResponse:
        """GET the userinfo endpoint with the bearer access token.

        Raises:
            DiscoveryError: If the provider publishes no userinfo endpoint.
            NetworkError: On transport failure.
            InvalidAccessTokenError: If the endpoint answers 401.
            HttpResponseError / AuthorizationException: On other failures.
            ResponseParseError: If the body is malformed.
        """
        endpoint = self.provider.userinfo_endpoint
        if not endpoint:
            raise DiscoveryError("Provider does not publish a userinfo endpoint")

        response = transport.execute(
            "GET",
            endpoint,
            headers={"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"},
            timeout=timeout,
        )
        if response.status_code == 401:
            raise InvalidAccessTokenError()
        _raise_for_error(response, "UserInfo request")
        return UserInfoResponse.from_response(parse_json_body(response, "UserInfo request"))


@dataclass(frozen=True)
class DiscoveryRequest:
    """Fetches an OpenID Provider discovery document."""

    url: str

    def execute(self, transport: HttpTransport, timeout: float | None = None) -> ProviderConfiguration:
        """GET the discovery document.

        Raises:
            NetworkError: On transport failure.
            HttpResponseError: On non-success status.
            ResponseParseError: If the document is malformed.
        """
        response = transport.execute("GET", self.url, headers={"Accept": "application/json"}, timeout=timeout)
        if not response.is_success:
            raise HttpResponseError(response.status_code, f"Discovery failed with status {response.status_code}")
        return ProviderConfiguration.from_discovery(parse_json_body(response, "Discovery document"))


@dataclass(frozen=True)
class JwksRequest:
    """Fetches a JSON Web Key Set."""

    url: str

    def execute(self, transport: HttpTransport, timeout: float | None = None) -> PyJWKSet:
        """GET the JWKS and parse the usable keys.

        Raises:
            NetworkError: On transport failure.
            HttpResponseError: On non-success status.
            ResponseParseError: If no usable key can be parsed.
        """
        response = transport.execute("GET", self.url, headers={"Accept": "application/json"}, timeout=timeout)
        if not response.is_success:
            raise HttpResponseError(response.status_code, f"JWKS request failed with status {response.status_code}")
        data = parse_json_body(response, "JWKS")
        if not isinstance(data.get("keys"), list):
            raise ResponseParseError("JWKS is missing the 'keys' list")
        try:
            return PyJWKSet.from_dict(data)
        except PyJWKSetError as e:
            raise ResponseParseError(f"JWKS contains no usable keys: {e}") from e
