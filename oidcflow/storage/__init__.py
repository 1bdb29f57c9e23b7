"""Persistence for auth state."""

from oidcflow.storage.models import AuthState
from oidcflow.storage.secure_store import (
    EncryptedFileSecureStore,
    InMemorySecureStore,
    KeyNotFoundError,
    SecureStore,
    SecureStoreError,
    generate_encryption_key,
    get_encryption_key,
    save_encryption_key,
)
from oidcflow.storage.state_store import AuthStateStore

__all__ = [
    "AuthState",
    "AuthStateStore",
    "EncryptedFileSecureStore",
    "InMemorySecureStore",
    "KeyNotFoundError",
    "SecureStore",
    "SecureStoreError",
    "generate_encryption_key",
    "get_encryption_key",
    "save_encryption_key",
]
