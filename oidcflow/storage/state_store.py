"""Thread-safe, durably persisted auth state.

Every mutation follows the same pattern: build the next snapshot, write it to
the :class:`~oidcflow.storage.secure_store.SecureStore`, and only then make it
visible. If the write fails the previous snapshot stays current and a
:class:`~oidcflow.core.errors.PersistenceError` is raised.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace

from oidcflow.core.errors import FlowAlreadyInProgress, NoFlowInProgress, NotAuthenticatedError, PersistenceError
from oidcflow.core.oidc.models import AuthorizationRequest, ProviderConfiguration, TokenResponse
from oidcflow.storage.models import AuthState
from oidcflow.storage.secure_store import SecureStore

logger = logging.getLogger(__name__)


class AuthStateStore:
    """Owns the single :class:`AuthState` of a client."""

    def __init__(self, secure_store: SecureStore, storage_key: str = AuthState.STORAGE_KEY) -> None:
        """Initialize the store and restore any previously persisted state.

        Raises:
            PersistenceError: If persisted state exists but cannot be read.
        """
        self._secure_store = secure_store
        self._storage_key = storage_key
        self._lock = threading.RLock()
        self._state = self._load()

    def _load(self) -> AuthState:
        try:
            state = AuthState.restore(self._secure_store.get(self._storage_key))
        except Exception as e:
            raise PersistenceError(f"Stored auth state could not be read: {e}") from e
        if state is None:
            return AuthState()
        logger.debug(
            f"Restored auth state (authenticated={state.is_authenticated}, "
            f"pending_flow={state.has_pending_flow})"
        )
        return state

    def _commit(self, state: AuthState) -> AuthState:
        # Caller holds self._lock.
        try:
            if state.is_empty:
                self._secure_store.delete(self._storage_key)
            else:
                self._secure_store.put(self._storage_key, state.persist())
        except Exception as e:
            logger.error(f"Failed to persist auth state: {e}")
            raise PersistenceError(f"Auth state could not be saved: {e}") from e
        self._state = state
        return state

    def _mutate(self, change: Callable[[AuthState], AuthState]) -> AuthState:
        with self._lock:
            return self._commit(change(self._state))

    def get(self) -> AuthState:
        """Return the current snapshot."""
        with self._lock:
            return self._state

    def reload(self) -> AuthState:
        """Re-read the persisted state, replacing the in-memory snapshot."""
        with self._lock:
            self._state = self._load()
            return self._state

    def begin_flow(
        self,
        request: AuthorizationRequest,
        provider: ProviderConfiguration | None = None,
    ) -> AuthState:
        """Record a new pending authorization request.

        Raises:
            FlowAlreadyInProgress: If another request is pending.
            PersistenceError: If the state could not be saved.
        """

        def change(state: AuthState) -> AuthState:
            if state.pending_request is not None:
                raise FlowAlreadyInProgress()
            return state.with_pending(request, provider)

        return self._mutate(change)

    def complete_flow(self, tokens: TokenResponse, flow_id: str | None = None) -> AuthState:
        """Install tokens and clear the pending request in one step.

        Args:
            tokens: Tokens obtained from the code exchange.
            flow_id: If given, the pending request must belong to this flow.

        Raises:
            NoFlowInProgress: If no (matching) request is pending.
            PersistenceError: If the state could not be saved.
        """

        def change(state: AuthState) -> AuthState:
            pending = state.pending_request
            if pending is None or (flow_id is not None and pending.flow_id != flow_id):
                raise NoFlowInProgress()
            return state.with_pending(None).with_tokens(tokens)

        return self._mutate(change)

    def cancel_flow(self, flow_id: str | None = None) -> bool:
        """Discard the pending request, if any.

        Returns:
            True if a pending request was removed.
        """
        with self._lock:
            pending = self._state.pending_request
            if pending is None or (flow_id is not None and pending.flow_id != flow_id):
                return False
            self._commit(self._state.with_pending(None))
            return True

    def update_tokens(self, tokens: TokenResponse, expected_refresh_token: str | None = None) -> AuthState:
        """Replace the token set, keeping the current refresh token if ``tokens`` has none.

        Args:
            tokens: The newly issued tokens.
            expected_refresh_token: If given, the update only applies while the
                stored refresh token is still this one.

        Raises:
            NotAuthenticatedError: If the stored refresh token changed.
            PersistenceError: If the state could not be saved.
        """

        def change(state: AuthState) -> AuthState:
            if expected_refresh_token is not None:
                self._require_refresh_token(state, expected_refresh_token)
            return state.with_tokens(tokens.merged_with(state.tokens))

        return self._mutate(change)

    def clear_tokens(self) -> AuthState:
        """Drop the token set but keep provider metadata."""
        return self._mutate(lambda state: state.with_tokens(None))

    def clear_provider(self) -> AuthState:
        """Forget the stored provider metadata."""
        return self._mutate(lambda state: replace(state, provider=None))

    def clear(self, expected_refresh_token: str | None = None) -> AuthState:
        """Erase all persisted credential material.

        Args:
            expected_refresh_token: If given, only clear while the stored
                refresh token is still this one.

        Raises:
            NotAuthenticatedError: If the stored refresh token changed.
        """

        def change(state: AuthState) -> AuthState:
            if expected_refresh_token is not None:
                self._require_refresh_token(state, expected_refresh_token)
            return AuthState()

        return self._mutate(change)

    @staticmethod
    def _require_refresh_token(state: AuthState, refresh_token: str) -> None:
        stored = state.tokens.refresh_token if state.tokens is not None else None
        if stored != refresh_token:
            logger.info("Auth state changed while a refresh was in flight; discarding the result")
            raise NotAuthenticatedError("The session changed during the refresh")
