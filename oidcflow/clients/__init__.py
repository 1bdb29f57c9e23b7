"""Blocking and callback-based client facades."""

from oidcflow.clients.async_client import PendingCall, WebAuthClient
from oidcflow.clients.browser import ConsoleBrowser
from oidcflow.clients.sync_client import SyncWebAuthClient, create_engine

__all__ = [
    "ConsoleBrowser",
    "PendingCall",
    "SyncWebAuthClient",
    "WebAuthClient",
    "create_engine",
]
