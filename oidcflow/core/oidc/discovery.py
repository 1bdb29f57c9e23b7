"""Provider metadata resolution.

Fetches the provider's ``/.well-known/openid-configuration`` document and its
JWKS through the request layer and caches both. Cached entries change only on
an explicit :meth:`ProviderResolver.invalidate`, never implicitly mid-flow.
"""

from __future__ import annotations

import logging
import threading

from jwt import PyJWKSet

from oidcflow.core.errors import DiscoveryError, OIDCError
from oidcflow.core.oidc.models import ProviderConfiguration
from oidcflow.core.oidc.requests import DiscoveryRequest, JwksRequest
from oidcflow.core.transport import HttpTransport

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = ".well-known/openid-configuration"


def discovery_url(issuer_url: str) -> str:
    """Build the discovery URL for an issuer.

    Args:
        issuer_url: Either an issuer URL or the full discovery URL.

    Returns:
        The ``.well-known/openid-configuration`` URL.
    """
    url = issuer_url.rstrip("/")
    if url.endswith(WELL_KNOWN_PATH):
        return url
    return f"{url}/{WELL_KNOWN_PATH}"


def _issuer_from(issuer_url: str) -> str:
    if issuer_url.rstrip("/").endswith(WELL_KNOWN_PATH):
        return issuer_url.rstrip("/")[: -len(WELL_KNOWN_PATH)].rstrip("/")
    return issuer_url


class ProviderResolver:
    """Resolves and caches provider configurations keyed by issuer URL.

    Reads are served from the cache without locking; fetches and
    invalidation hold a writer lock so one issuer is fetched at most once
    concurrently.
    """

    def __init__(self, transport: HttpTransport) -> None:
        """Initialize the resolver.

        Args:
            transport: HTTP capability used for discovery and JWKS requests.
        """
        self.transport = transport
        self._lock = threading.RLock()
        self._configurations: dict[str, ProviderConfiguration] = {}
        self._key_sets: dict[str, PyJWKSet] = {}

    def cached(self, issuer_url: str) -> ProviderConfiguration | None:
        """Return the cached configuration for ``issuer_url`` if present."""
        return self._configurations.get(_issuer_from(issuer_url))

    def resolve(self, issuer_url: str) -> ProviderConfiguration:
        """Return the configuration for an issuer, fetching it on first use.

        The ``issuer`` inside the document must equal the requested issuer
        exactly.

        Raises:
            DiscoveryError: If the document cannot be fetched, is malformed,
                or names a different issuer.
        """
        issuer = _issuer_from(issuer_url)
        config = self._configurations.get(issuer)
        if config is not None:
            return config

        with self._lock:
            config = self._configurations.get(issuer)
            if config is not None:
                return config

            try:
                config = DiscoveryRequest(discovery_url(issuer)).execute(self.transport)
            except DiscoveryError:
                raise
            except OIDCError as e:
                raise DiscoveryError(f"Could not load discovery document for {issuer}: {e.description}") from e

            if config.issuer != issuer:
                raise DiscoveryError(
                    f"Issuer mismatch in discovery document. Expected: {issuer}, Got: {config.issuer}"
                )

            self._configurations[issuer] = config
            logger.info(f"Resolved provider configuration for {issuer}")
            return config

    def invalidate(self, issuer_url: str) -> None:
        """Drop the cached configuration (and keys) so the next resolve refetches."""
        issuer = _issuer_from(issuer_url)
        with self._lock:
            config = self._configurations.pop(issuer, None)
            if config is not None:
                self._key_sets.pop(config.jwks_uri, None)
        logger.debug(f"Invalidated provider configuration for {issuer}")

    def signing_keys(self, config: ProviderConfiguration, refresh: bool = False) -> PyJWKSet:
        """Return the provider's JWKS, fetching it if needed.

        Args:
            config: Resolved provider configuration.
            refresh: Refetch even if cached (after an unknown ``kid``).

        Raises:
            NetworkError: On transport failure.
            ResponseParseError: If the JWKS is malformed.
        """
        if not refresh:
            keys = self._key_sets.get(config.jwks_uri)
            if keys is not None:
                return keys

        with self._lock:
            if not refresh and config.jwks_uri in self._key_sets:
                return self._key_sets[config.jwks_uri]
            keys = JwksRequest(config.jwks_uri).execute(self.transport)
            self._key_sets[config.jwks_uri] = keys
            logger.debug(f"Loaded {len(keys.keys)} signing keys from {config.jwks_uri}")
            return keys
