"""Durable credential state."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any, ClassVar

from oidcflow.core.oidc.models import AuthorizationRequest, ProviderConfiguration, TokenResponse
from oidcflow.core.persistable import persistable


@persistable
@dataclass(frozen=True)
class AuthState:
    """Aggregate of everything persisted for one user session.

    Instances are immutable snapshots; the
    :class:`~oidcflow.storage.state_store.AuthStateStore` swaps whole
    snapshots so readers never see a half-updated state.
    """

    STORAGE_KEY: ClassVar[str] = "oidcflow.auth_state"

    tokens: TokenResponse | None = None
    provider: ProviderConfiguration | None = None
    pending_request: AuthorizationRequest | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.tokens is not None

    @property
    def has_pending_flow(self) -> bool:
        return self.pending_request is not None

    @property
    def is_empty(self) -> bool:
        return self.tokens is None and self.provider is None and self.pending_request is None

    def with_pending(
        self,
        request: AuthorizationRequest | None,
        provider: ProviderConfiguration | None = None,
    ) -> AuthState:
        return replace(self, pending_request=request, provider=provider or self.provider)

    def with_tokens(self, tokens: TokenResponse | None) -> AuthState:
        return replace(self, tokens=tokens)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokens": self.tokens.to_dict() if self.tokens else None,
            "provider": self.provider.to_dict() if self.provider else None,
            "pending_request": self.pending_request.to_dict() if self.pending_request else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthState:
        return cls(
            tokens=TokenResponse.from_dict(data["tokens"]) if data.get("tokens") else None,
            provider=ProviderConfiguration.from_discovery(data["provider"]) if data.get("provider") else None,
            pending_request=AuthorizationRequest.from_dict(data["pending_request"])
            if data.get("pending_request")
            else None,
        )

    def persist(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def restore(cls, data: str | None) -> AuthState | None:
        if data is None:
            return None
        return cls.from_dict(json.loads(data))
