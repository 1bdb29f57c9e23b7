"""Typed OIDC protocol records.

Immutable dataclasses for provider metadata, authorization requests and
responses, token sets and userinfo claims. Parsing helpers validate the
shape of provider payloads and raise
:class:`~oidcflow.core.errors.ResponseParseError` instead of returning
partially populated values.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar
from urllib.parse import parse_qs, urlsplit

from oidcflow.core.errors import ResponseParseError
from oidcflow.core.persistable import persistable


def _require_str(data: Mapping[str, Any], key: str, source: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ResponseParseError(f"{source} is missing required field '{key}'")
    return value


def _optional_str(data: Mapping[str, Any], key: str, source: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ResponseParseError(f"{source} field '{key}' must be a string")
    return value


def _str_tuple(data: Mapping[str, Any], key: str, source: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ResponseParseError(f"{source} field '{key}' must be a list of strings")
    return tuple(value)


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@persistable
@dataclass(frozen=True)
class ProviderConfiguration:
    """Endpoints and capabilities published in a provider discovery document."""

    STORAGE_KEY: ClassVar[str] = "oidcflow.provider_configuration"

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: str | None = None
    revocation_endpoint: str | None = None
    end_session_endpoint: str | None = None
    id_token_signing_alg_values_supported: tuple[str, ...] = ("RS256",)
    code_challenge_methods_supported: tuple[str, ...] = ()
    scopes_supported: tuple[str, ...] = ()

    @classmethod
    def from_discovery(cls, data: Mapping[str, Any]) -> ProviderConfiguration:
        """Build a configuration from a discovery document.

        Raises:
            ResponseParseError: If required endpoints are missing or mistyped.
        """
        source = "Discovery document"
        algorithms = _str_tuple(data, "id_token_signing_alg_values_supported", source)
        return cls(
            issuer=_require_str(data, "issuer", source),
            authorization_endpoint=_require_str(data, "authorization_endpoint", source),
            token_endpoint=_require_str(data, "token_endpoint", source),
            jwks_uri=_require_str(data, "jwks_uri", source),
            userinfo_endpoint=_optional_str(data, "userinfo_endpoint", source),
            revocation_endpoint=_optional_str(data, "revocation_endpoint", source),
            end_session_endpoint=_optional_str(data, "end_session_endpoint", source),
            id_token_signing_alg_values_supported=algorithms or ("RS256",),
            code_challenge_methods_supported=_str_tuple(
                data, "code_challenge_methods_supported", source
            ),
            scopes_supported=_str_tuple(data, "scopes_supported", source),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a discovery-shaped dictionary."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "jwks_uri": self.jwks_uri,
            "userinfo_endpoint": self.userinfo_endpoint,
            "revocation_endpoint": self.revocation_endpoint,
            "end_session_endpoint": self.end_session_endpoint,
            "id_token_signing_alg_values_supported": list(self.id_token_signing_alg_values_supported),
            "code_challenge_methods_supported": list(self.code_challenge_methods_supported),
            "scopes_supported": list(self.scopes_supported),
        }

    def persist(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def restore(cls, data: str | None) -> ProviderConfiguration | None:
        if data is None:
            return None
        return cls.from_discovery(json.loads(data))


@dataclass(frozen=True)
class AuthorizationRequest:
    """Flow-scoped parameters of one authorization attempt.

    Lives from ``start`` until the matching redirect has been consumed
    (accepted or rejected).
    """

    flow_id: str
    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...]
    state: str
    nonce: str
    code_verifier: str
    code_challenge: str
    code_challenge_method: str
    response_type: str = "code"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return (
            f"AuthorizationRequest(flow_id={self.flow_id!r}, client_id={self.client_id!r}, "
            f"redirect_uri={self.redirect_uri!r}, scopes={self.scopes!r}, "
            f"code_challenge_method={self.code_challenge_method!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scopes": list(self.scopes),
            "state": self.state,
            "nonce": self.nonce,
            "code_verifier": self.code_verifier,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "response_type": self.response_type,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuthorizationRequest:
        return cls(
            flow_id=data["flow_id"],
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            scopes=tuple(data.get("scopes", ())),
            state=data["state"],
            nonce=data["nonce"],
            code_verifier=data["code_verifier"],
            code_challenge=data["code_challenge"],
            code_challenge_method=data["code_challenge_method"],
            response_type=data.get("response_type", "code"),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(UTC),
        )


@dataclass(frozen=True)
class AuthorizationResponse:
    """Parameters carried by the redirect back from the provider."""

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_redirect_url(cls, url: str) -> AuthorizationResponse:
        """Extract authorization response parameters from a redirect URL.

        Query parameters are used; a fragment is consulted only when the
        query carries neither ``code`` nor ``error``.
        """
        parts = urlsplit(url)
        params = parse_qs(parts.query)
        if "code" not in params and "error" not in params and parts.fragment:
            params = parse_qs(parts.fragment)

        def first(name: str) -> str | None:
            values = params.get(name)
            return values[0] if values else None

        return cls(
            state=first("state"),
            code=first("code"),
            error=first("error"),
            error_description=first("error_description"),
            error_uri=first("error_uri"),
        )


@persistable
@dataclass(frozen=True)
class TokenResponse:
    """Token set returned by the token endpoint.

    ``expires_at`` is absolute, computed from ``expires_in`` at receipt time.
    """

    STORAGE_KEY: ClassVar[str] = "oidcflow.token_response"

    access_token: str
    token_type: str
    expires_at: datetime | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenResponse(token_type={self.token_type!r}, expires_at={self.expires_at!r}, "
            f"has_refresh_token={self.refresh_token is not None}, "
            f"has_id_token={self.id_token is not None}, scope={self.scope!r})"
        )

    @classmethod
    def from_response(
        cls,
        data: Mapping[str, Any],
        received_at: datetime | None = None,
    ) -> TokenResponse:
        """Parse a successful token endpoint body.

        Args:
            data: Decoded JSON body.
            received_at: Receipt instant used to anchor ``expires_in``.

        Raises:
            ResponseParseError: If required fields are missing or mistyped.
        """
        source = "Token response"
        expires_in = data.get("expires_in")
        if isinstance(expires_in, str) and expires_in.isdigit():
            expires_in = int(expires_in)
        if expires_in is not None and (isinstance(expires_in, bool) or not isinstance(expires_in, int)):
            raise ResponseParseError(f"{source} field 'expires_in' must be an integer")

        received = received_at or datetime.now(UTC)
        return cls(
            access_token=_require_str(data, "access_token", source),
            token_type=_require_str(data, "token_type", source),
            expires_at=received + timedelta(seconds=expires_in) if expires_in is not None else None,
            refresh_token=_optional_str(data, "refresh_token", source),
            id_token=_optional_str(data, "id_token", source),
            scope=_optional_str(data, "scope", source),
        )

    def merged_with(self, previous: TokenResponse | None) -> TokenResponse:
        """Return this token set, keeping ``previous``'s refresh token if none was issued."""
        if self.refresh_token is None and previous is not None and previous.refresh_token:
            return replace(self, refresh_token=previous.refresh_token)
        return self

    def is_expired(self, leeway_seconds: int = 0, now: datetime | None = None) -> bool:
        """Check whether the access token is expired (or will be within ``leeway_seconds``)."""
        if self.expires_at is None:
            return False
        current = now or datetime.now(UTC)
        return current + timedelta(seconds=leeway_seconds) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TokenResponse:
        return cls(
            access_token=data["access_token"],
            token_type=data["token_type"],
            expires_at=_parse_datetime(data.get("expires_at")),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            scope=data.get("scope"),
        )

    def persist(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def restore(cls, data: str | None) -> TokenResponse | None:
        if data is None:
            return None
        return cls.from_dict(json.loads(data))


@dataclass(frozen=True)
class UserInfoResponse:
    """Claims returned by the userinfo endpoint."""

    sub: str
    claims: dict[str, Any] = field(default_factory=dict, hash=False, compare=True)

    @property
    def name(self) -> str | None:
        return self.claims.get("name")

    @property
    def email(self) -> str | None:
        return self.claims.get("email")

    @property
    def email_verified(self) -> bool | None:
        return self.claims.get("email_verified")

    @property
    def preferred_username(self) -> str | None:
        return self.claims.get("preferred_username")

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> UserInfoResponse:
        """Parse a userinfo body; ``sub`` is mandatory.

        Raises:
            ResponseParseError: If ``sub`` is missing.
        """
        return cls(sub=_require_str(data, "sub", "UserInfo response"), claims=dict(data))
