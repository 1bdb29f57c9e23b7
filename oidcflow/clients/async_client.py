"""Non-blocking client facade.

Operations run on a worker pool and report through ``on_success`` /
``on_error`` callbacks. Callbacks are handed to a callback executor, which by
default runs them on the worker thread; pass e.g. ``loop.call_soon_threadsafe``
to deliver them on an event loop, or the ``submit`` method of a dedicated
single-thread executor for UI-affine delivery.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from enum import StrEnum
from typing import Any, Generic, TypeVar

from oidcflow.clients.sync_client import create_engine
from oidcflow.core.config import ClientConfig
from oidcflow.core.logging import ProtocolLogger
from oidcflow.core.oidc.flows import AuthenticationFlowEngine, AuthorizationFlow, Browser
from oidcflow.core.oidc.models import TokenResponse, UserInfoResponse
from oidcflow.core.transport import HttpTransport
from oidcflow.storage.secure_store import SecureStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CallbackExecutor = Callable[[Callable[[], None]], Any]
SuccessCallback = Callable[[T], None]
ErrorCallback = Callable[[Exception], None]


def run_inline(callback: Callable[[], None]) -> None:
    """Default callback executor: run the callback on the worker thread."""
    callback()


class CallState(StrEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PendingCall(Generic[T]):
    """Handle for an operation submitted to :class:`WebAuthClient`.

    Exactly one of the callbacks runs, at most once, unless the call is
    cancelled first, in which case neither runs.
    """

    def __init__(self, on_cancel: Callable[[], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._state = CallState.PENDING
        self._on_cancel = on_cancel
        self._future: Future[None] | None = None
        self._finished = threading.Event()

    @property
    def state(self) -> CallState:
        return self._state

    def cancelled(self) -> bool:
        return self._state == CallState.CANCELLED

    def done(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> bool:
        """Cancel the call.

        Returns:
            True if the call was still pending; no callback will run.
            False if a callback was already dispatched.
        """
        with self._lock:
            if self._state != CallState.PENDING:
                return False
            self._state = CallState.CANCELLED
        if self._future is not None:
            self._future.cancel()
        if self._on_cancel is not None:
            self._on_cancel()
        self._finished.set()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the work finished or the call was cancelled."""
        if self._future is not None and not self.cancelled():
            wait_futures([self._future], timeout=timeout)
        return self._finished.wait(timeout)

    def _claim(self) -> bool:
        with self._lock:
            if self._state != CallState.PENDING:
                return False
            self._state = CallState.DELIVERED
            return True

    def _deliver(self, callback: Callable[[], None]) -> None:
        try:
            if self._claim():
                callback()
        finally:
            self._finished.set()


class WebAuthClient:
    """Callback-based client over the flow engine."""

    def __init__(
        self,
        config: ClientConfig,
        secure_store: SecureStore | None = None,
        transport: HttpTransport | None = None,
        protocol_logger: ProtocolLogger | None = None,
        engine: AuthenticationFlowEngine | None = None,
        executor: ThreadPoolExecutor | None = None,
        callback_executor: CallbackExecutor | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client registration settings.
            secure_store: Durable storage for the auth state.
            transport: HTTP capability.
            protocol_logger: Logger for the HTTP exchanges.
            engine: Pre-built engine; overrides the collaborator arguments.
            executor: Pool running the blocking work. Owned by the client if omitted.
            callback_executor: Context the callbacks are delivered in.
        """
        self.engine = engine or create_engine(config, secure_store, transport, protocol_logger)
        self.config = self.engine.config
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="oidcflow")
        self._callback_executor = callback_executor or run_inline

    def _submit(
        self,
        work: Callable[[], T],
        on_success: SuccessCallback[T] | None,
        on_error: ErrorCallback | None,
        on_cancel: Callable[[], None] | None = None,
    ) -> PendingCall[T]:
        call: PendingCall[T] = PendingCall(on_cancel)

        def dispatch(callback: Callable[[], None]) -> None:
            self._callback_executor(lambda: call._deliver(callback))

        def run() -> None:
            if call.cancelled():
                return
            try:
                result = work()
            except Exception as e:
                error = e
                if call.cancelled():
                    logger.debug(f"Discarding {type(error).__name__} from cancelled call")
                    return
                if on_error is None:
                    logger.error(f"Unhandled error in background operation: {error}")
                dispatch(lambda: on_error(error) if on_error else None)
                return
            dispatch(lambda: on_success(result) if on_success else None)

        call._future = self._executor.submit(run)
        return call

    def sign_in(
        self,
        browser: Browser,
        on_success: SuccessCallback[TokenResponse] | None = None,
        on_error: ErrorCallback | None = None,
        extra_params: Mapping[str, str] | None = None,
    ) -> PendingCall[TokenResponse]:
        """Run a login through ``browser``; cancelling also cancels the flow."""
        return self._submit(
            lambda: self.engine.sign_in(browser, extra_params),
            on_success,
            on_error,
            on_cancel=lambda: self.engine.cancel(),
        )

    def start_authorization(
        self,
        on_success: SuccessCallback[AuthorizationFlow] | None = None,
        on_error: ErrorCallback | None = None,
        extra_params: Mapping[str, str] | None = None,
    ) -> PendingCall[AuthorizationFlow]:
        return self._submit(lambda: self.engine.start_authorization(extra_params), on_success, on_error)

    def handle_redirect(
        self,
        redirect_url: str,
        on_success: SuccessCallback[TokenResponse] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> PendingCall[TokenResponse]:
        return self._submit(lambda: self.engine.handle_redirect(redirect_url), on_success, on_error)

    def refresh(
        self,
        on_success: SuccessCallback[TokenResponse] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> PendingCall[TokenResponse]:
        return self._submit(self.engine.refresh, on_success, on_error)

    def get_user_profile(
        self,
        on_success: SuccessCallback[UserInfoResponse] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> PendingCall[UserInfoResponse]:
        return self._submit(self.engine.get_user_profile, on_success, on_error)

    def sign_out(
        self,
        on_success: SuccessCallback[bool] | None = None,
        on_error: ErrorCallback | None = None,
        revoke: bool = True,
    ) -> PendingCall[bool]:
        return self._submit(lambda: self.engine.sign_out(revoke), on_success, on_error)

    def cancel(self, flow_id: str | None = None) -> bool:
        """Cancel the pending login flow (runs immediately, no callback)."""
        return self.engine.cancel(flow_id)

    def get_tokens(self) -> TokenResponse | None:
        return self.engine.get_tokens()

    def is_authenticated(self) -> bool:
        return self.engine.is_authenticated()

    def invalidate_provider(self) -> None:
        """Drop cached provider metadata (runs immediately, no callback)."""
        self.engine.invalidate_provider()

    def close(self, wait: bool = True) -> None:
        """Shut down the owned worker pool and release the transport."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)
        close = getattr(self.engine.transport, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> WebAuthClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
