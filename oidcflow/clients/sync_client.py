"""Blocking client facade."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from oidcflow.core.config import ClientConfig
from oidcflow.core.logging import ProtocolLogger
from oidcflow.core.oidc.flows import AuthenticationFlowEngine, AuthorizationFlow, Browser
from oidcflow.core.oidc.models import TokenResponse, UserInfoResponse
from oidcflow.core.transport import HttpTransport, HttpxTransport
from oidcflow.storage.secure_store import InMemorySecureStore, SecureStore
from oidcflow.storage.state_store import AuthStateStore

logger = logging.getLogger(__name__)


def create_engine(
    config: ClientConfig,
    secure_store: SecureStore | None = None,
    transport: HttpTransport | None = None,
    protocol_logger: ProtocolLogger | None = None,
) -> AuthenticationFlowEngine:
    """Assemble a flow engine from its collaborators.

    Args:
        config: Client registration settings.
        secure_store: Durable storage. Defaults to a volatile in-memory store.
        transport: HTTP capability. Defaults to httpx.
        protocol_logger: Logger for the HTTP exchanges.

    Raises:
        PersistenceError: If previously stored state cannot be read.
    """
    if secure_store is None:
        logger.debug("No secure store given; auth state will not survive restarts")
        secure_store = InMemorySecureStore()
    if transport is None:
        transport = HttpxTransport(timeout=config.http_timeout, protocol_logger=protocol_logger)
    return AuthenticationFlowEngine(
        config,
        AuthStateStore(secure_store),
        transport=transport,
        protocol_logger=protocol_logger,
    )


class SyncWebAuthClient:
    """Runs every operation to completion on the calling thread.

    Failures are raised as :class:`~oidcflow.core.errors.OIDCError` subclasses;
    nothing is retried.
    """

    def __init__(
        self,
        config: ClientConfig,
        secure_store: SecureStore | None = None,
        transport: HttpTransport | None = None,
        protocol_logger: ProtocolLogger | None = None,
        engine: AuthenticationFlowEngine | None = None,
    ) -> None:
        self.engine = engine or create_engine(config, secure_store, transport, protocol_logger)
        self.config = self.engine.config

    def sign_in(self, browser: Browser, extra_params: Mapping[str, str] | None = None) -> TokenResponse:
        return self.engine.sign_in(browser, extra_params)

    def start_authorization(self, extra_params: Mapping[str, str] | None = None) -> AuthorizationFlow:
        return self.engine.start_authorization(extra_params)

    def handle_redirect(self, redirect_url: str) -> TokenResponse:
        return self.engine.handle_redirect(redirect_url)

    def cancel(self, flow_id: str | None = None) -> bool:
        return self.engine.cancel(flow_id)

    def refresh(self) -> TokenResponse:
        return self.engine.refresh()

    def get_user_profile(self) -> UserInfoResponse:
        return self.engine.get_user_profile()

    def sign_out(self, revoke: bool = True) -> bool:
        return self.engine.sign_out(revoke)

    def get_tokens(self) -> TokenResponse | None:
        return self.engine.get_tokens()

    def is_authenticated(self) -> bool:
        return self.engine.is_authenticated()

    def invalidate_provider(self) -> None:
        self.engine.invalidate_provider()

    def close(self) -> None:
        """Release the transport, if it holds resources."""
        close = getattr(self.engine.transport, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> SyncWebAuthClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
