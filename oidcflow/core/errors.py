"""Exception types raised by the OIDC client core.

Every failure surfaced to callers derives from :class:`OIDCError` and carries a
machine-readable ``code`` plus a human-readable ``description``. Payloads
produced by :meth:`OIDCError.to_dict` never contain token material.
"""

from __future__ import annotations

from typing import Any


class OIDCError(Exception):
    """Base exception for all OIDC client failures."""

    code: str = "oidc_error"

    def __init__(self, description: str | None = None, *, code: str | None = None) -> None:
        self.code = code or type(self).code
        self.description = description or self.code
        super().__init__(self.description)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload without secrets."""
        return {
            "error": self.code,
            "error_description": self.description,
            "type": type(self).__name__,
        }


class NetworkError(OIDCError):
    """Transport-level failure (connection refused, timeout, TLS...)."""

    code = "network_error"


class ResponseParseError(OIDCError):
    """Response body had the wrong content type or shape."""

    code = "parse_error"


class HttpResponseError(OIDCError):
    """Non-success HTTP status without a structured OAuth error body."""

    code = "http_error"

    def __init__(self, status_code: int, description: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(description or f"Unexpected HTTP status {status_code}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class InvalidAccessTokenError(HttpResponseError):
    """Bearer request rejected with 401: the access token is stale or invalid."""

    code = "invalid_token"

    def __init__(self, description: str | None = None) -> None:
        super().__init__(401, description or "Access token rejected by the provider")


class AuthorizationException(OIDCError):
    """The provider answered with a structured OAuth error.

    Attributes:
        code: OAuth ``error`` value (e.g. ``invalid_client``).
        description: ``error_description`` if provided.
        uri: ``error_uri`` if provided.
    """

    code = "authorization_error"

    def __init__(
        self,
        code: str,
        description: str | None = None,
        uri: str | None = None,
    ) -> None:
        self.uri = uri
        super().__init__(description or code, code=code)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> AuthorizationException:
        """Build the exception (or a specialised subclass) from an error body."""
        code = str(data.get("error") or "unknown_error")
        description = data.get("error_description")
        uri = data.get("error_uri")
        if code == InvalidGrantError.code:
            return InvalidGrantError(description, uri)
        return cls(code, description, uri)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.uri:
            data["error_uri"] = self.uri
        return data


class InvalidGrantError(AuthorizationException):
    """The refresh token (or code) was rejected as revoked or expired."""

    code = "invalid_grant"

    def __init__(self, description: str | None = None, uri: str | None = None) -> None:
        super().__init__(self.code, description, uri)


class CsrfError(OIDCError):
    """Redirect ``state`` did not match the in-flight authorization request."""

    code = "state_mismatch"


StateMismatchError = CsrfError


class InvalidRedirectError(OIDCError):
    """Redirect URL does not belong to the registered redirect URI."""

    code = "invalid_redirect"


class IdTokenValidationError(OIDCError):
    """An ID token failed signature or claim validation."""

    code = "invalid_id_token"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"ID token rejected: {reason}")


class DiscoveryError(OIDCError):
    """The provider discovery document could not be resolved."""

    code = "discovery_error"


class PersistenceError(OIDCError):
    """Auth state could not be durably saved; the mutation was rolled back."""

    code = "persistence_error"


class FlowAlreadyInProgress(OIDCError):
    """A second authorization flow was started while one is pending."""

    code = "flow_in_progress"

    def __init__(self, description: str | None = None) -> None:
        super().__init__(description or "An authorization flow is already in progress")


class NoFlowInProgress(OIDCError):
    """A flow operation was called without a pending authorization request."""

    code = "no_flow_in_progress"

    def __init__(self, description: str | None = None) -> None:
        super().__init__(description or "No authorization flow is in progress")


class FlowCancelledError(OIDCError):
    """The flow was cancelled before it could complete."""

    code = "flow_cancelled"

    def __init__(self, description: str | None = None) -> None:
        super().__init__(description or "Authorization flow was cancelled")


class NotAuthenticatedError(OIDCError):
    """The operation requires tokens that are not available."""

    code = "not_authenticated"

    def __init__(self, description: str | None = None) -> None:
        super().__init__(description or "No tokens are available; sign in first")
