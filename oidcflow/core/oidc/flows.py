"""Authorization code flow orchestration.

The :class:`AuthenticationFlowEngine` drives one login attempt at a time
through these states:

- IDLE -> AUTHORIZING: request generated, pending request persisted, URL built
- AUTHORIZING -> EXCHANGING: redirect accepted, code exchange issued
- AUTHORIZING -> FAILED: state mismatch or provider error on the redirect
- AUTHORIZING -> CANCELLED: caller or browser cancelled
- EXCHANGING -> COMPLETE: tokens and ID token valid, tokens persisted
- EXCHANGING -> FAILED: exchange or ID token validation failed

Token refresh, sign-out and userinfo are independent operations on the same
auth state.
"""

from __future__ import annotations

import hmac
import logging
import threading
import uuid
from collections.abc import Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol
from urllib.parse import urlencode, urlsplit

from oidcflow.core.config import ClientConfig
from oidcflow.core.errors import (
    AuthorizationException,
    CsrfError,
    FlowCancelledError,
    IdTokenValidationError,
    InvalidGrantError,
    InvalidRedirectError,
    NoFlowInProgress,
    NotAuthenticatedError,
    OIDCError,
    ResponseParseError,
)
from oidcflow.core.logging import ProtocolLogger, get_protocol_logger, mask
from oidcflow.core.oidc.discovery import ProviderResolver
from oidcflow.core.oidc.models import (
    AuthorizationRequest,
    AuthorizationResponse,
    ProviderConfiguration,
    TokenResponse,
    UserInfoResponse,
)
from oidcflow.core.oidc.pkce import generate_nonce, generate_pkce, generate_state
from oidcflow.core.oidc.requests import (
    AuthorizeRequest,
    RefreshTokenRequest,
    RevokeTokenRequest,
    TokenExchangeRequest,
    UserInfoRequest,
)
from oidcflow.core.oidc.validation import (
    IdTokenClaims,
    SigningKeyNotFoundError,
    decode_unverified_claims,
    validate_id_token,
)
from oidcflow.core.transport import HttpTransport, HttpxTransport
from oidcflow.storage.state_store import AuthStateStore

logger = logging.getLogger(__name__)

# Finished flows kept around so late redirects for them can be recognised.
MAX_TRACKED_FLOWS = 32


class FlowStatus(StrEnum):
    """Status of an authorization flow."""

    IDLE = "idle"
    AUTHORIZING = "authorizing"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({FlowStatus.COMPLETE, FlowStatus.FAILED, FlowStatus.CANCELLED})


class Browser(Protocol):
    """Shows the authorization page to the user.

    Returns the terminal redirect URL, or None if the user cancelled.
    """

    def open(self, authorize_url: str, redirect_uri_prefix: str) -> str | None: ...


@dataclass
class AuthorizationFlow:
    """One login attempt and its progress."""

    flow_id: str
    status: FlowStatus = FlowStatus.IDLE
    authorize_url: str | None = None
    request: AuthorizationRequest | None = field(default=None, repr=False)
    tokens: TokenResponse | None = field(default=None, repr=False)
    error: OIDCError | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Summary of the flow without secrets."""
        return {
            "flow_id": self.flow_id,
            "status": self.status.value,
            "authorize_url": self.authorize_url,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def _same_endpoint(url: str, redirect_uri: str) -> bool:
    actual, expected = urlsplit(url), urlsplit(redirect_uri)
    return (actual.scheme, actual.netloc.lower(), actual.path) == (
        expected.scheme,
        expected.netloc.lower(),
        expected.path,
    )


class AuthenticationFlowEngine:
    """Orchestrates login, refresh, userinfo and sign-out over one auth state.

    All operations block the calling thread and are safe to call from
    several threads at once.
    """

    def __init__(
        self,
        config: ClientConfig,
        store: AuthStateStore,
        transport: HttpTransport | None = None,
        resolver: ProviderResolver | None = None,
        protocol_logger: ProtocolLogger | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Client registration settings.
            store: Auth state store shared by all operations.
            transport: HTTP capability. Defaults to an httpx-backed transport.
            resolver: Provider resolver. Defaults to one using ``transport``.
            protocol_logger: Logger collecting the exchanges of each operation.
        """
        self.config = config
        self.store = store
        self.transport = transport or HttpxTransport(timeout=config.http_timeout)
        self.resolver = resolver or ProviderResolver(self.transport)
        self.protocol_logger = protocol_logger or get_protocol_logger()

        self._lock = threading.RLock()
        self._flows: dict[str, AuthorizationFlow] = {}
        self._refresh_lock = threading.Lock()
        self._refresh_in_flight: Future[TokenResponse] | None = None

    # Provider metadata

    def provider(self) -> ProviderConfiguration:
        """Return the provider configuration, resolving it on first use."""
        stored = self.store.get().provider
        if stored is not None and stored.issuer.rstrip("/") == self.config.issuer.rstrip("/"):
            return stored
        return self.resolver.resolve(self.config.issuer)

    def invalidate_provider(self) -> None:
        """Drop cached provider metadata so the next use fetches it again.

        Raises:
            PersistenceError: If the updated state could not be saved.
        """
        self.resolver.invalidate(self.config.issuer)
        self.store.clear_provider()
        logger.info(f"Invalidated provider configuration for {self.config.issuer}")

    def _validate_id_token(
        self,
        id_token: str,
        provider: ProviderConfiguration,
        nonce: str | None,
    ) -> IdTokenClaims:
        def validate(refresh_keys: bool) -> IdTokenClaims:
            return validate_id_token(
                id_token,
                nonce=nonce,
                issuer=provider.issuer,
                audience=self.config.client_id,
                signing_keys=self.resolver.signing_keys(provider, refresh=refresh_keys),
                clock_skew_seconds=self.config.clock_skew_seconds,
                provider_algorithms=provider.id_token_signing_alg_values_supported,
            )

        try:
            return validate(refresh_keys=False)
        except SigningKeyNotFoundError as e:
            # Keys may have rotated since the JWKS was cached.
            logger.info(f"Signing key {e.kid!r} not found, reloading JWKS")
            return validate(refresh_keys=True)

    # Login

    def _track(self, flow: AuthorizationFlow) -> None:
        # Caller holds self._lock.
        self._flows[flow.flow_id] = flow
        while len(self._flows) > MAX_TRACKED_FLOWS:
            oldest = next(iter(self._flows))
            if not self._flows[oldest].is_terminal:
                break
            del self._flows[oldest]

    def _fail(self, flow: AuthorizationFlow, error: OIDCError) -> OIDCError:
        # Caller holds self._lock.
        flow.status = FlowStatus.FAILED
        flow.error = error
        flow.completed_at = datetime.now(UTC)
        self.store.cancel_flow(flow.flow_id)
        logger.warning(f"Flow {flow.flow_id} failed: {error.code}: {error.description}")
        return error

    def get_flow(self, flow_id: str) -> AuthorizationFlow | None:
        """Return a tracked flow by id."""
        with self._lock:
            return self._flows.get(flow_id)

    def start_authorization(self, extra_params: Mapping[str, str] | None = None) -> AuthorizationFlow:
        """Begin a login attempt.

        Args:
            extra_params: Additional authorization parameters (e.g. ``prompt``).

        Returns:
            The flow in AUTHORIZING state, carrying the URL for the browser.

        Raises:
            FlowAlreadyInProgress: If another login attempt is pending.
            DiscoveryError: If the provider cannot be resolved.
            PersistenceError: If the pending request cannot be saved.
        """
        provider = self.provider()
        pkce = generate_pkce(provider.code_challenge_methods_supported)
        request = AuthorizationRequest(
            flow_id=uuid.uuid4().hex,
            client_id=self.config.client_id,
            redirect_uri=self.config.redirect_uri,
            scopes=tuple(self.config.scopes),
            state=generate_state(),
            nonce=generate_nonce(),
            code_verifier=pkce.verifier,
            code_challenge=pkce.challenge,
            code_challenge_method=pkce.method,
        )
        authorize_url = AuthorizeRequest(provider, request, extra_params or {}).url

        with self._lock:
            self.store.begin_flow(request, provider)
            flow = AuthorizationFlow(
                flow_id=request.flow_id,
                status=FlowStatus.AUTHORIZING,
                authorize_url=authorize_url,
                request=request,
            )
            self._track(flow)

        logger.info(f"Started authorization flow {flow.flow_id} (state={mask(request.state, keep=8)})")
        return flow

    def _flow_for_redirect(self, response: AuthorizationResponse, redirect_url: str) -> AuthorizationFlow:
        # Caller holds self._lock.
        pending = self.store.get().pending_request
        if pending is None:
            for flow in self._flows.values():
                if (
                    flow.status == FlowStatus.CANCELLED
                    and flow.request is not None
                    and response.state is not None
                    and hmac.compare_digest(flow.request.state, response.state)
                ):
                    raise FlowCancelledError(f"Flow {flow.flow_id} was cancelled; redirect ignored")
            raise NoFlowInProgress()

        if not _same_endpoint(redirect_url, pending.redirect_uri):
            raise InvalidRedirectError(f"Redirect does not match {pending.redirect_uri}")

        flow = self._flows.get(pending.flow_id)
        if flow is None:
            # Started by an earlier process; resume from the persisted request.
            flow = AuthorizationFlow(
                flow_id=pending.flow_id,
                status=FlowStatus.AUTHORIZING,
                request=pending,
                started_at=pending.created_at,
            )
            self._track(flow)
            logger.info(f"Resuming persisted authorization flow {flow.flow_id}")
        if flow.status != FlowStatus.AUTHORIZING:
            raise NoFlowInProgress(f"Flow {flow.flow_id} is not awaiting a redirect ({flow.status})")
        return flow

    def handle_redirect(self, redirect_url: str) -> TokenResponse:
        """Complete the pending login with the redirect the browser received.

        Returns:
            The accepted token set, now persisted.

        Raises:
            NoFlowInProgress: If no login is pending.
            FlowCancelledError: If the flow was cancelled before or during the exchange.
            InvalidRedirectError: If the URL is not the registered redirect URI.
            CsrfError: If ``state`` is missing or does not match.
            AuthorizationException: If the provider reported an error.
            IdTokenValidationError: If the ID token is missing or invalid.
            NetworkError: If the token endpoint could not be reached.
        """
        response = AuthorizationResponse.from_redirect_url(redirect_url)

        with self._lock:
            flow = self._flow_for_redirect(response, redirect_url)
            request = flow.request
            assert request is not None

            if response.state is None or not hmac.compare_digest(response.state, request.state):
                raise self._fail(flow, CsrfError("Redirect state does not match the authorization request"))
            if response.is_error:
                raise self._fail(
                    flow,
                    AuthorizationException(
                        response.error or "unknown_error", response.error_description, response.error_uri
                    ),
                )
            if not response.code:
                raise self._fail(flow, ResponseParseError("Redirect carries neither code nor error"))

            flow.status = FlowStatus.EXCHANGING
            provider = self.store.get().provider or self.provider()

        try:
            with self.protocol_logger.flow(flow.flow_id, "authorization_code"):
                tokens = TokenExchangeRequest(
                    provider=provider,
                    client_id=self.config.client_id,
                    redirect_uri=request.redirect_uri,
                    code=response.code,
                    code_verifier=request.code_verifier,
                    client_secret=self.config.client_secret,
                ).execute(self.transport, timeout=self.config.http_timeout)
                if tokens.id_token is None:
                    if "openid" in request.scopes:
                        raise IdTokenValidationError("token response carries no ID token")
                else:
                    self._validate_id_token(tokens.id_token, provider, nonce=request.nonce)
        except OIDCError as e:
            with self._lock:
                if flow.status == FlowStatus.CANCELLED:
                    raise FlowCancelledError() from e
                self._fail(flow, e)
                raise

        with self._lock:
            if flow.status == FlowStatus.CANCELLED:
                logger.info(f"Discarding tokens for cancelled flow {flow.flow_id}")
                raise FlowCancelledError()
            try:
                self.store.complete_flow(tokens, flow_id=flow.flow_id)
            except OIDCError as e:
                flow.status = FlowStatus.FAILED
                flow.error = e
                flow.completed_at = datetime.now(UTC)
                raise
            flow.status = FlowStatus.COMPLETE
            flow.tokens = tokens
            flow.completed_at = datetime.now(UTC)

        logger.info(f"Authorization flow {flow.flow_id} complete")
        return tokens

    def cancel(self, flow_id: str | None = None) -> bool:
        """Cancel a login attempt.

        During AUTHORIZING a later redirect is refused. During EXCHANGING the
        exchange runs to completion but its result is discarded.

        Args:
            flow_id: Flow to cancel. Defaults to the pending one.

        Returns:
            True if a flow was cancelled, False if there was nothing to cancel.
        """
        with self._lock:
            pending = self.store.get().pending_request
            target = flow_id or (pending.flow_id if pending else None)
            if target is None:
                return False

            flow = self._flows.get(target)
            if flow is None:
                if pending is None or pending.flow_id != target:
                    return False
                flow = AuthorizationFlow(flow_id=target, status=FlowStatus.AUTHORIZING, request=pending)
                self._track(flow)
            if flow.is_terminal:
                return False

            self.store.cancel_flow(target)
            flow.status = FlowStatus.CANCELLED
            flow.error = FlowCancelledError()
            flow.completed_at = datetime.now(UTC)

        logger.info(f"Cancelled authorization flow {target}")
        return True

    def sign_in(self, browser: Browser, extra_params: Mapping[str, str] | None = None) -> TokenResponse:
        """Run a complete login through a browser collaborator.

        Raises:
            FlowCancelledError: If the user (or another thread) cancelled.
            OIDCError: Any failure from :meth:`start_authorization` or
                :meth:`handle_redirect`.
        """
        flow = self.start_authorization(extra_params)
        assert flow.authorize_url is not None
        try:
            redirect_url = browser.open(flow.authorize_url, self.config.redirect_uri)
        except BaseException:
            self.cancel(flow.flow_id)
            raise
        if redirect_url is None:
            self.cancel(flow.flow_id)
            raise FlowCancelledError("Sign-in cancelled by the user")
        return self.handle_redirect(redirect_url)

    # Token lifecycle

    def get_tokens(self) -> TokenResponse | None:
        return self.store.get().tokens

    def is_authenticated(self) -> bool:
        return self.store.get().is_authenticated

    def refresh(self) -> TokenResponse:
        """Refresh the token set.

        Concurrent callers share one in-flight request and all observe its
        outcome.

        Raises:
            NotAuthenticatedError: If no refresh token is stored, or the session
                changed (sign-out or a new sign-in) while the request was in
                flight. The result is discarded in that case.
            InvalidGrantError: If the refresh token was revoked; auth state is cleared.
            IdTokenValidationError: If a returned ID token is invalid.
            NetworkError: On transport failure; auth state is untouched.
        """
        with self._refresh_lock:
            in_flight = self._refresh_in_flight
            owner = in_flight is None
            if in_flight is None:
                in_flight = self._refresh_in_flight = Future()
        if not owner:
            logger.debug("Joining in-flight token refresh")
            return in_flight.result()

        try:
            tokens = self._refresh()
        except BaseException as e:
            in_flight.set_exception(e)
            raise
        else:
            in_flight.set_result(tokens)
            return tokens
        finally:
            with self._refresh_lock:
                self._refresh_in_flight = None

    def _refresh(self) -> TokenResponse:
        current = self.store.get().tokens
        if current is None or not current.refresh_token:
            raise NotAuthenticatedError("No refresh token is available")
        provider = self.provider()

        with self.protocol_logger.flow(uuid.uuid4().hex, "refresh"):
            try:
                issued = RefreshTokenRequest(
                    provider=provider,
                    client_id=self.config.client_id,
                    refresh_token=current.refresh_token,
                    client_secret=self.config.client_secret,
                ).execute(self.transport, timeout=self.config.http_timeout)
            except InvalidGrantError:
                logger.warning("Refresh token rejected as invalid_grant; clearing auth state")
                self.store.clear(expected_refresh_token=current.refresh_token)
                raise

            if issued.id_token is not None:
                claims = self._validate_id_token(issued.id_token, provider, nonce=None)
                if current.id_token is not None:
                    previous_sub = decode_unverified_claims(current.id_token).get("sub")
                    if previous_sub is not None and claims.subject != previous_sub:
                        raise IdTokenValidationError("subject changed on refresh")
            elif current.id_token is not None:
                issued = replace(issued, id_token=current.id_token)

        state = self.store.update_tokens(issued, expected_refresh_token=current.refresh_token)
        assert state.tokens is not None
        logger.info("Token refresh complete")
        return state.tokens

    def get_user_profile(self) -> UserInfoResponse:
        """Fetch the signed-in user's claims from the userinfo endpoint.

        Raises:
            NotAuthenticatedError: If no access token is stored.
            InvalidAccessTokenError: If the access token was rejected.
        """
        tokens = self.store.get().tokens
        if tokens is None:
            raise NotAuthenticatedError()
        with self.protocol_logger.flow(uuid.uuid4().hex, "userinfo"):
            return UserInfoRequest(self.provider(), tokens.access_token).execute(
                self.transport, timeout=self.config.http_timeout
            )

    def end_session_url(self) -> str | None:
        """Build the provider logout URL for the current session, if supported."""
        state = self.store.get()
        provider = state.provider or self.resolver.cached(self.config.issuer)
        if provider is None or not provider.end_session_endpoint:
            return None
        params = {"client_id": self.config.client_id}
        if state.tokens is not None and state.tokens.id_token:
            params["id_token_hint"] = state.tokens.id_token
        if self.config.end_session_redirect_uri:
            params["post_logout_redirect_uri"] = self.config.end_session_redirect_uri
        separator = "&" if "?" in provider.end_session_endpoint else "?"
        return f"{provider.end_session_endpoint}{separator}{urlencode(params)}"

    def sign_out(self, revoke: bool = True) -> bool:
        """Revoke tokens (best effort) and clear the local auth state.

        Args:
            revoke: Whether to call the revocation endpoint first.

        Returns:
            True if every stored token was revoked, False if any revocation
            was skipped or failed. The local state is cleared either way.

        Raises:
            PersistenceError: If the cleared state could not be saved.
        """
        state = self.store.get()
        tokens = state.tokens
        revoked = tokens is None

        if revoke and tokens is not None:
            try:
                provider: ProviderConfiguration | None = self.provider()
            except OIDCError as e:
                logger.warning(f"Could not resolve provider for revocation: {e.description}")
                provider = None
            if provider is None or not provider.revocation_endpoint:
                logger.info("No revocation endpoint available; skipping revocation")
            else:
                revoked = True
                to_revoke = [("refresh_token", tokens.refresh_token), ("access_token", tokens.access_token)]
                with self.protocol_logger.flow(uuid.uuid4().hex, "revocation"):
                    for hint, token in to_revoke:
                        if not token:
                            continue
                        try:
                            revoked = (
                                RevokeTokenRequest(
                                    provider=provider,
                                    client_id=self.config.client_id,
                                    token=token,
                                    token_type_hint=hint,
                                    client_secret=self.config.client_secret,
                                ).execute(self.transport, timeout=self.config.http_timeout)
                                and revoked
                            )
                        except OIDCError as e:
                            logger.warning(f"Could not revoke {hint}: {e.description}")
                            revoked = False

        with self._lock:
            for flow in self._flows.values():
                if not flow.is_terminal:
                    flow.status = FlowStatus.CANCELLED
                    flow.error = FlowCancelledError("Signed out")
                    flow.completed_at = datetime.now(UTC)
            self.store.clear()

        logger.info("Signed out")
        return revoked
