"""SecureStore capability and bundled implementations.

The auth state store only needs ``put``/``get``/``delete`` on string keys and
values; how values are protected at rest is the implementation's concern.

:class:`EncryptedFileSecureStore` keeps one AES-256-GCM encrypted file per key.
The key is resolved like this:

1. ``OIDCFLOW_STORE_KEY`` environment variable (hex key)
2. ``OIDCFLOW_STORE_KEY_FILE`` environment variable (path to key file)
3. Default key file at ``~/.oidcflow/store.key``
"""

from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Default store location
DEFAULT_STORE_DIR = Path.home() / ".oidcflow"
DEFAULT_KEY_PATH = DEFAULT_STORE_DIR / "store.key"

# Environment variable names
ENV_STORE_KEY = "OIDCFLOW_STORE_KEY"
ENV_STORE_KEY_FILE = "OIDCFLOW_STORE_KEY_FILE"

_NONCE_BYTES = 12


class SecureStoreError(Exception):
    """Base exception for secure store failures."""


class KeyNotFoundError(SecureStoreError):
    """Raised when the encryption key cannot be found."""


@runtime_checkable
class SecureStore(Protocol):
    """String-keyed, string-valued durable storage."""

    def put(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> None: ...


class InMemorySecureStore:
    """Volatile SecureStore, for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


def get_encryption_key() -> str:
    """Get the store encryption key from environment variable or key file.

    Returns:
        The encryption key as a hex string.

    Raises:
        KeyNotFoundError: If no key is found in any location.
    """
    key = os.environ.get(ENV_STORE_KEY)
    if key:
        return key

    key_file_path = os.environ.get(ENV_STORE_KEY_FILE)
    if key_file_path:
        key_path = Path(key_file_path)
        if key_path.exists():
            return key_path.read_text().strip()
        raise KeyNotFoundError(f"Key file not found: {key_file_path}")

    if DEFAULT_KEY_PATH.exists():
        return DEFAULT_KEY_PATH.read_text().strip()

    raise KeyNotFoundError(
        f"No encryption key found. Set {ENV_STORE_KEY} environment variable, "
        f"set {ENV_STORE_KEY_FILE} to point to a key file, "
        f"or create key file at {DEFAULT_KEY_PATH}"
    )


def generate_encryption_key() -> str:
    """Generate a new AES-256 encryption key.

    Returns:
        A 64-character hex string (256 bits).
    """
    return secrets.token_hex(32)


def save_encryption_key(key: str, key_path: Path | None = None) -> Path:
    """Save an encryption key to a file readable only by its owner.

    Args:
        key: The encryption key to save.
        key_path: Path to save the key. Defaults to ~/.oidcflow/store.key.

    Returns:
        The path where the key was saved.
    """
    if key_path is None:
        key_path = DEFAULT_KEY_PATH

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(key)
    key_path.chmod(0o600)
    return key_path


class EncryptedFileSecureStore:
    """AES-256-GCM encrypted, file-per-key SecureStore.

    Writes go to a temporary file that atomically replaces the target, so a
    crash never leaves a truncated entry behind.
    """

    def __init__(self, directory: Path | None = None, key: str | None = None) -> None:
        """Initialize the store.

        Args:
            directory: Where entries are written. Defaults to ``~/.oidcflow/store``.
            key: Hex-encoded 256-bit key. Resolved with :func:`get_encryption_key` if omitted.

        Raises:
            KeyNotFoundError: If no key is configured.
            SecureStoreError: If the key is not a 256-bit hex string.
        """
        self.directory = Path(directory or DEFAULT_STORE_DIR / "store").expanduser()
        hex_key = key or get_encryption_key()
        try:
            raw_key = bytes.fromhex(hex_key)
        except ValueError as e:
            raise SecureStoreError("Encryption key must be hex encoded") from e
        if len(raw_key) != 32:
            raise SecureStoreError("Encryption key must be 256 bits (64 hex characters)")
        self._aead = AESGCM(raw_key)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{digest}.bin"

    def put(self, key: str, value: str) -> None:
        nonce = secrets.token_bytes(_NONCE_BYTES)
        payload = nonce + self._aead.encrypt(nonce, value.encode("utf-8"), key.encode("utf-8"))
        path = self._path(key)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def get(self, key: str) -> str | None:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            payload = path.read_bytes()
        nonce, ciphertext = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, key.encode("utf-8"))
        except InvalidTag as e:
            raise SecureStoreError(f"Entry for {key!r} could not be decrypted (wrong key or tampered)") from e
        return plaintext.decode("utf-8")

    def delete(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)
