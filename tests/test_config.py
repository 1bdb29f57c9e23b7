"""Tests for configuration loading."""

import os
from pathlib import Path

import pytest
import yaml

from oidcflow.core.config import (
    DEFAULT_SCOPES,
    AppConfig,
    ClientConfig,
    ConfigError,
    get_default_config_yaml,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop OIDCFLOW_* variables from the developer's environment."""
    for key in list(os.environ):
        if key.startswith("OIDCFLOW_"):
            monkeypatch.delenv(key)


def _client(**overrides) -> ClientConfig:
    values = {
        "client_id": "app",
        "redirect_uri": "http://127.0.0.1:8765/callback",
        "issuer": "https://idp.example.com",
    }
    values.update(overrides)
    return ClientConfig(**values)


class TestClientConfig:
    """Tests for the immutable client record."""

    def test_defaults(self):
        """Test default scopes and limits."""
        config = _client()
        assert config.scopes == DEFAULT_SCOPES
        assert config.clock_skew_seconds == 120
        assert config.client_secret is None

    def test_secret_not_in_repr(self):
        """Test the client secret never appears in repr."""
        assert "hunter2" not in repr(_client(client_secret="hunter2"))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"client_id": ""},
            {"redirect_uri": "callback"},
            {"issuer": ""},
            {"issuer": "http://idp.example.com"},
            {"scopes": ("profile",)},
            {"clock_skew_seconds": -1},
            {"http_timeout": 0},
        ],
    )
    def test_invalid(self, overrides):
        """Test invalid settings are rejected."""
        with pytest.raises(ConfigError):
            _client(**overrides)

    def test_insecure_issuer_opt_in(self):
        """Test plain-http issuers need an explicit opt-in."""
        config = _client(issuer="http://localhost:8080", allow_insecure_issuer=True)
        assert config.issuer == "http://localhost:8080"

    def test_from_dict(self):
        """Test parsing with space-separated scopes."""
        config = ClientConfig.from_dict(
            {
                "client_id": "app",
                "redirect_uri": "com.example.app:/callback",
                "issuer": "https://idp.example.com",
                "scopes": "openid email",
                "clock_skew_seconds": "30",
            }
        )
        assert config.scopes == ("openid", "email")
        assert config.clock_skew_seconds == 30

    def test_to_dict_omits_secret(self):
        """Test serialization leaves the secret out."""
        data = _client(client_secret="hunter2").to_dict()
        assert "client_secret" not in data
        assert data["scopes"] == list(DEFAULT_SCOPES)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test loading when no file exists."""
        config = load_config(tmp_path / "missing.yaml")
        assert config.client.client_id is None
        assert config.client.redirect_uri == "http://127.0.0.1:8765/callback"
        assert config.logging.level == "INFO"

    def test_load_yaml(self, tmp_path):
        """Test values from config.yaml."""
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "client": {"client_id": "from-file", "issuer": "https://idp.example.com"},
                    "storage": {"path": str(tmp_path / "store")},
                    "logging": {"level": "debug"},
                }
            )
        )

        config = load_config(path)

        assert config.config_path == path
        assert config.client.client_id == "from-file"
        assert config.storage.path == tmp_path / "store"
        assert config.logging.level == "DEBUG"
        assert config.client.to_client_config().issuer == "https://idp.example.com"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test environment variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"client": {"client_id": "from-file"}}))
        monkeypatch.setenv("OIDCFLOW_CLIENT_ID", "from-env")
        monkeypatch.setenv("OIDCFLOW_SCOPES", "openid offline_access")
        monkeypatch.setenv("OIDCFLOW_CLOCK_SKEW_SECONDS", "60")
        monkeypatch.setenv("OIDCFLOW_STORE_PATH", str(tmp_path / "env-store"))
        monkeypatch.setenv("OIDCFLOW_TRACE", "yes")

        config = load_config(path)

        assert config.client.client_id == "from-env"
        assert config.client.scopes == ["openid", "offline_access"]
        assert config.client.clock_skew_seconds == 60
        assert config.storage.path == tmp_path / "env-store"
        assert config.logging.trace is True

    def test_bad_env_int_ignored(self, tmp_path, monkeypatch):
        """Test a non-numeric override keeps the previous value."""
        monkeypatch.setenv("OIDCFLOW_CLOCK_SKEW_SECONDS", "soon")
        assert load_config(tmp_path / "missing.yaml").client.clock_skew_seconds == 120

    def test_invalid_yaml_ignored(self, tmp_path):
        """Test an unreadable file falls back to defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("client: [unclosed")
        assert load_config(path).client.client_id is None

    def test_incomplete_client_settings(self, tmp_path):
        """Test building a client without an id fails clearly."""
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.yaml").client.to_client_config()


class TestAppConfig:
    """Tests for AppConfig persistence."""

    def test_save_and_load(self, tmp_path):
        """Test a saved config loads back."""
        config = AppConfig()
        config.client.client_id = "saved"
        config.client.issuer = "https://idp.example.com"
        path = tmp_path / "nested" / "config.yaml"

        config.save(path)
        loaded = load_config(path)

        assert loaded.client.client_id == "saved"
        assert loaded.client.issuer == "https://idp.example.com"

    def test_default_yaml_parses(self):
        """Test the generated template is valid YAML for AppConfig."""
        data = yaml.safe_load(get_default_config_yaml())
        config = AppConfig.from_dict(data)
        assert config.client.redirect_uri == "http://127.0.0.1:8765/callback"
        assert config.storage.path == Path("~/.oidcflow/store").expanduser()
        assert "openid" in config.client.scopes
