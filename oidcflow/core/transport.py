"""HTTP transport capability used by the request layer.

The request layer only ever talks to an :class:`HttpTransport`; hosts can plug
in their own implementation. :class:`HttpxTransport` is the default and is
built on the protocol-logging :class:`~oidcflow.core.logging.LoggingClient`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from oidcflow.core.errors import NetworkError
from oidcflow.core.logging import LoggingClient, ProtocolLogger, redact_sensitive


DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class HttpResponse:
    """Status, headers and body of a completed HTTP exchange."""

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def content_type(self) -> str:
        """Media type without parameters, lower-cased."""
        raw = self.header("content-type") or ""
        return raw.split(";", 1)[0].strip().lower()

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@runtime_checkable
class HttpTransport(Protocol):
    """Synchronous HTTP capability.

    Implementations perform exactly one attempt per call and raise
    :class:`~oidcflow.core.errors.NetworkError` on transport failures.
    """

    def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: str | None = None,
        timeout: float | None = None,
    ) -> HttpResponse: ...


class HttpxTransport:
    """Default :class:`HttpTransport` backed by httpx."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        protocol_logger: ProtocolLogger | None = None,
        verify: bool = True,
        **client_kwargs: Any,
    ) -> None:
        """Initialize the transport.

        Args:
            timeout: Default timeout in seconds for every request.
            protocol_logger: Logger capturing the HTTP exchanges.
            verify: Whether to verify TLS certificates.
            **client_kwargs: Extra arguments for the underlying httpx client
                (e.g. ``transport=httpx.MockTransport(...)`` in tests).
        """
        self.timeout = timeout
        self._client = LoggingClient(
            protocol_logger=protocol_logger,
            timeout=timeout,
            verify=verify,
            **client_kwargs,
        )

    def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: str | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        """Perform a single HTTP request.

        Raises:
            NetworkError: If the request could not be completed.
        """
        try:
            response = self._client.request(
                method,
                url,
                headers=dict(headers or {}),
                content=body.encode("utf-8") if body is not None else None,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout calling {redact_sensitive(url)}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {redact_sensitive(url)} failed: {e}") from e

        return HttpResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> HttpxTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
