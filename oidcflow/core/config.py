"""Client and application configuration.

:class:`ClientConfig` is the immutable record handed to the flow engine.
:class:`AppConfig` is what the CLI loads from ``config.yaml`` files and
environment variables. Environment variables take precedence over config
file settings.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml


logger = logging.getLogger(__name__)

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".oidcflow"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_STORE_PATH = DEFAULT_CONFIG_DIR / "store"

# Environment variable prefix
ENV_PREFIX = "OIDCFLOW_"

DEFAULT_SCOPES = ("openid", "profile", "email", "offline_access")


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


@dataclass(frozen=True)
class ClientConfig:
    """Immutable settings for one OIDC client registration."""

    client_id: str
    redirect_uri: str
    issuer: str
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    client_secret: str | None = field(default=None, repr=False)
    end_session_redirect_uri: str | None = None
    clock_skew_seconds: int = 120
    http_timeout: float = 30.0
    allow_insecure_issuer: bool = False

    def __post_init__(self) -> None:
        if not self.client_id:
            raise ConfigError("client_id is required")
        if not self.redirect_uri or not urlsplit(self.redirect_uri).scheme:
            raise ConfigError("redirect_uri must be an absolute URI")
        if not self.issuer:
            raise ConfigError("issuer is required")
        scheme = urlsplit(self.issuer).scheme
        if scheme != "https" and not (self.allow_insecure_issuer and scheme == "http"):
            raise ConfigError(f"issuer must use https: {self.issuer}")
        if "openid" not in self.scopes:
            raise ConfigError("scopes must include 'openid'")
        if self.clock_skew_seconds < 0:
            raise ConfigError("clock_skew_seconds must not be negative")
        if self.http_timeout <= 0:
            raise ConfigError("http_timeout must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientConfig:
        """Create a ClientConfig from a dictionary.

        Raises:
            ConfigError: If required settings are missing or invalid.
        """
        scopes = data.get("scopes") or DEFAULT_SCOPES
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            client_id=data.get("client_id") or "",
            redirect_uri=data.get("redirect_uri") or "",
            issuer=data.get("issuer") or "",
            scopes=tuple(scopes),
            client_secret=data.get("client_secret"),
            end_session_redirect_uri=data.get("end_session_redirect_uri"),
            clock_skew_seconds=int(data.get("clock_skew_seconds", 120)),
            http_timeout=float(data.get("http_timeout", 30.0)),
            allow_insecure_issuer=bool(data.get("allow_insecure_issuer", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (the client secret is omitted)."""
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "issuer": self.issuer,
            "scopes": list(self.scopes),
            "end_session_redirect_uri": self.end_session_redirect_uri,
            "clock_skew_seconds": self.clock_skew_seconds,
            "http_timeout": self.http_timeout,
            "allow_insecure_issuer": self.allow_insecure_issuer,
        }


@dataclass
class ClientSettings:
    """Raw, possibly incomplete client settings from file and environment."""

    client_id: str | None = None
    client_secret: str | None = None
    issuer: str | None = None
    redirect_uri: str = "http://127.0.0.1:8765/callback"
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    clock_skew_seconds: int = 120
    http_timeout: float = 30.0
    allow_insecure_issuer: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientSettings:
        """Create ClientSettings from a dictionary."""
        scopes = data.get("scopes") or list(DEFAULT_SCOPES)
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            client_id=data.get("client_id"),
            client_secret=data.get("client_secret"),
            issuer=data.get("issuer"),
            redirect_uri=data.get("redirect_uri", "http://127.0.0.1:8765/callback"),
            scopes=list(scopes),
            clock_skew_seconds=data.get("clock_skew_seconds", 120),
            http_timeout=data.get("http_timeout", 30.0),
            allow_insecure_issuer=data.get("allow_insecure_issuer", False),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "issuer": self.issuer,
            "redirect_uri": self.redirect_uri,
            "scopes": self.scopes,
            "clock_skew_seconds": self.clock_skew_seconds,
            "http_timeout": self.http_timeout,
            "allow_insecure_issuer": self.allow_insecure_issuer,
        }

    def to_client_config(self) -> ClientConfig:
        """Build the immutable client record.

        Raises:
            ConfigError: If required settings are missing or invalid.
        """
        return ClientConfig(
            client_id=self.client_id or "",
            redirect_uri=self.redirect_uri,
            issuer=self.issuer or "",
            scopes=tuple(self.scopes),
            client_secret=self.client_secret,
            clock_skew_seconds=self.clock_skew_seconds,
            http_timeout=self.http_timeout,
            allow_insecure_issuer=self.allow_insecure_issuer,
        )


@dataclass
class StorageSettings:
    """Where auth state is persisted."""

    path: Path = DEFAULT_STORE_PATH
    key_file: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageSettings:
        """Create StorageSettings from a dictionary."""
        return cls(
            path=Path(data["path"]).expanduser() if data.get("path") else DEFAULT_STORE_PATH,
            key_file=Path(data["key_file"]).expanduser() if data.get("key_file") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "path": str(self.path),
            "key_file": str(self.key_file) if self.key_file else None,
        }


@dataclass
class LoggingSettings:
    """Logging configuration settings."""

    level: str = "INFO"
    trace: bool = False
    file: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingSettings:
        """Create LoggingSettings from a dictionary."""
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            trace=data.get("trace", False),
            file=Path(data["file"]).expanduser() if data.get("file") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "trace": self.trace,
            "file": str(self.file) if self.file else None,
        }


@dataclass
class AppConfig:
    """Main application configuration."""

    client: ClientSettings = field(default_factory=ClientSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary."""
        return cls(
            client=ClientSettings.from_dict(data.get("client") or {}),
            storage=StorageSettings.from_dict(data.get("storage") or {}),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "client": self.client.to_dict(),
            "storage": self.storage.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AppConfig with merged settings.
    """
    config = AppConfig()

    file_path = config_path or DEFAULT_CONFIG_FILE
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
            config = AppConfig.from_dict(data, config_path=file_path)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable config file {file_path}: {e}")

    # Client settings
    client = config.client
    for attr in ("client_id", "client_secret", "issuer", "redirect_uri"):
        value = os.environ.get(f"{ENV_PREFIX}{attr.upper()}")
        if value:
            setattr(client, attr, value)

    if os.environ.get(f"{ENV_PREFIX}SCOPES"):
        client.scopes = os.environ[f"{ENV_PREFIX}SCOPES"].split()

    client.clock_skew_seconds = _get_env_int(f"{ENV_PREFIX}CLOCK_SKEW_SECONDS", client.clock_skew_seconds)
    client.allow_insecure_issuer = _get_env_bool(
        f"{ENV_PREFIX}ALLOW_INSECURE_ISSUER", client.allow_insecure_issuer
    )

    # Storage settings
    if os.environ.get(f"{ENV_PREFIX}STORE_PATH"):
        config.storage.path = Path(os.environ[f"{ENV_PREFIX}STORE_PATH"]).expanduser()

    # Logging settings
    if os.environ.get(f"{ENV_PREFIX}LOG_LEVEL"):
        config.logging.level = os.environ[f"{ENV_PREFIX}LOG_LEVEL"].upper()

    config.logging.trace = _get_env_bool(f"{ENV_PREFIX}TRACE", config.logging.trace)

    return config


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# oidcflow Configuration File
# Environment variables override these settings (prefix: OIDCFLOW_)

client:
  # OAuth client identifier registered with the provider
  client_id: null

  # Only for confidential clients; public clients rely on PKCE alone
  # client_secret: null

  # Issuer URL; the discovery document is read from
  # <issuer>/.well-known/openid-configuration
  issuer: null

  # Redirect URI registered for this client
  redirect_uri: "http://127.0.0.1:8765/callback"

  scopes:
    - openid
    - profile
    - email
    - offline_access

  # Tolerance in seconds for ID token exp/iat checks
  clock_skew_seconds: 120

  # HTTP timeout in seconds
  http_timeout: 30.0

storage:
  # Directory holding the encrypted auth state
  path: ~/.oidcflow/store

  # Encryption key file (defaults to ~/.oidcflow/store.key,
  # or set OIDCFLOW_STORE_KEY / OIDCFLOW_STORE_KEY_FILE)
  # key_file: ~/.oidcflow/store.key

logging:
  # TRACE, DEBUG, INFO, WARNING or ERROR
  level: INFO

  # Log full request/response bodies including secrets (never in production)
  trace: false

  # file: ~/.oidcflow/oidcflow.log
"""
