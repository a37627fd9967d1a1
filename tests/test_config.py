"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from extattr.config import (
    DEFAULT_AUDIT_RECENT_CAPACITY,
    MAX_CONCURRENCY,
    Config,
    ConfigurationError,
    DataSourceSettings,
    DirectoryServiceConfig,
    NotificationConfig,
    ResilienceConfig,
    default_max_concurrency,
)

DIRECTORY = DirectoryServiceConfig(server_uri="ldap://dc.example.com", base_dn="DC=example,DC=com")


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration."""
        config = Config(directory=DIRECTORY)

        assert config.data_sources.enable_directory is True
        assert config.data_sources.enable_endpoint_management is False
        assert config.page_size == 100
        assert config.verify_writes is False
        assert config.resilience.max_attempts == 5
        assert config.resilience.breaker_failure_threshold == 5

    def test_directory_requires_server_uri(self) -> None:
        """Test that the directory source needs a server URI."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config()

        assert "DIRECTORY_SERVER_URI" in str(exc_info.value)

    def test_directory_requires_ldap_scheme(self) -> None:
        """Test that a non-LDAP URI is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(directory=DirectoryServiceConfig(server_uri="https://dc", base_dn="DC=x"))

        assert "ldap(s) URI" in str(exc_info.value)

    def test_directory_requires_base_dn(self) -> None:
        """Test that the directory source needs a search base."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(directory=DirectoryServiceConfig(server_uri="ldaps://dc.example.com"))

        assert "DIRECTORY_BASE_DN" in str(exc_info.value)

    def test_directory_settings_ignored_when_disabled(self) -> None:
        """Test that directory settings are optional when the source is disabled."""
        config = Config(
            data_sources=DataSourceSettings(enable_directory=False, enable_endpoint_management=True)
        )

        assert config.data_sources.any_enabled is True

    def test_invalid_reconcile_interval(self) -> None:
        """Test that out-of-range reconcile interval raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(directory=DIRECTORY, reconcile_interval_seconds=10)

        assert "RECONCILE_INTERVAL" in str(exc_info.value)

    def test_invalid_concurrency(self) -> None:
        """Test that concurrency must be within bounds."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(directory=DIRECTORY, max_concurrency=0)

        assert "MAX_CONCURRENCY" in str(exc_info.value)

    def test_collects_all_errors(self) -> None:
        """Test that every violation is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                directory=DIRECTORY,
                page_size=5000,
                resilience=ResilienceConfig(max_attempts=0, breaker_reset_seconds=0),
            )

        message = str(exc_info.value)
        assert "PAGE_SIZE" in message
        assert "MAX_ATTEMPTS" in message
        assert "BREAKER_RESET_SECONDS" in message

    def test_webhook_must_use_https(self) -> None:
        """Test that alert webhooks must be https."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                directory=DIRECTORY,
                notifications=NotificationConfig(webhook_url="http://hooks.example.com/x"),
            )

        assert "NOTIFICATION_WEBHOOK_URL" in str(exc_info.value)

    def test_default_concurrency_is_bounded(self) -> None:
        """Test the core-derived default stays within limits."""
        assert 1 <= default_max_concurrency() <= MAX_CONCURRENCY

        with patch("extattr.config.os.cpu_count", return_value=None):
            assert default_max_concurrency() == 2

        with patch("extattr.config.os.cpu_count", return_value=256):
            assert default_max_concurrency() == MAX_CONCURRENCY

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        env = {
            "MAPPINGS_FILE": str(tmp_path / "mappings.yaml"),
            "ENABLE_DIRECTORY": "false",
            "ENABLE_ENDPOINT_MANAGEMENT": "true",
            "MAX_CONCURRENCY": "8",
            "PAGE_SIZE": "250",
            "VERIFY_WRITES": "yes",
            "CALL_TIMEOUT": "12.5",
            "AUDIT_DIR": str(tmp_path / "audit"),
            "EXPORT_PATH": str(tmp_path / "exports"),
            "NOTIFICATION_WEBHOOK_URL": "https://hooks.example.com/alert",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.mappings_file == tmp_path / "mappings.yaml"
        assert config.data_sources.enable_directory is False
        assert config.data_sources.enable_endpoint_management is True
        assert config.max_concurrency == 8
        assert config.page_size == 250
        assert config.verify_writes is True
        assert config.resilience.timeout_seconds == 12.5
        assert config.audit.directory == tmp_path / "audit"
        assert config.export.path == tmp_path / "exports"
        assert config.notifications.webhook_url == "https://hooks.example.com/alert"

    def test_from_env_directory(self) -> None:
        """Test directory settings from environment."""
        env = {
            "DIRECTORY_SERVER_URI": "ldaps://dc01.corp.example.com",
            "DIRECTORY_BASE_DN": "OU=Computers,DC=corp,DC=example,DC=com",
            "DIRECTORY_KERBEROS": "false",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.directory.server_uri == "ldaps://dc01.corp.example.com"
        assert config.directory.base_dn == "OU=Computers,DC=corp,DC=example,DC=com"
        assert config.directory.use_kerberos is False
        assert config.export.path is None
        assert config.notifications.webhook_url is None

    def test_from_env_audit_settings(self, tmp_path: Path) -> None:
        """Test audit buffering and the in-memory window from environment."""
        env = {
            "ENABLE_DIRECTORY": "false",
            "AUDIT_DIR": str(tmp_path / "audit"),
            "AUDIT_BUFFER_SIZE": "50",
            "AUDIT_FLUSH_INTERVAL": "60",
            "AUDIT_RECENT_CAPACITY": "25",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.audit.buffer_size == 50
        assert config.audit.flush_interval_seconds == 60.0
        assert config.audit.recent_capacity == 25

        with patch.dict(os.environ, {"ENABLE_DIRECTORY": "false"}, clear=True):
            assert Config.from_env().audit.recent_capacity == DEFAULT_AUDIT_RECENT_CAPACITY

    def test_from_env_rejects_zero_recent_capacity(self) -> None:
        """Test the in-memory window size is validated."""
        env = {"ENABLE_DIRECTORY": "false", "AUDIT_RECENT_CAPACITY": "0"}

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "AUDIT_RECENT_CAPACITY" in str(exc_info.value)

    def test_from_env_rejects_non_integer(self) -> None:
        """Test that malformed numbers raise ConfigurationError."""
        with patch.dict(os.environ, {"MAX_CONCURRENCY": "lots"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "MAX_CONCURRENCY" in str(exc_info.value)
