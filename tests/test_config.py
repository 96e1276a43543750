"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    DatabaseConfig,
    SyncConfig,
    APIConfig,
    PluginConfig,
    Config,
    load_config,
    get_config,
    reset_config,
)
from models import SafetyMode


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "addonsync"
        assert cfg.user == "addonsync"
        assert cfg.password == ""
        assert cfg.min_pool_size == 5
        assert cfg.max_pool_size == 20

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
            assert cfg.host == "envhost"
            assert cfg.port == 5434
            assert cfg.database == "envdb"
            assert cfg.user == "envuser"
            assert cfg.password == "envpassword"
            assert cfg.min_pool_size == 3
            assert cfg.max_pool_size == 15

    def test_from_env_missing_password_raises(self):
        """Test that missing password raises ValueError."""
        with patch.dict(os.environ, {"DB_PASSWORD": ""}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                DatabaseConfig.from_env()
            assert "DB_PASSWORD" in str(exc_info.value)

    def test_password_not_in_repr(self):
        """Test that password is not exposed in repr."""
        cfg = DatabaseConfig(password="secret123")
        assert "secret123" not in repr(cfg)


class TestSyncConfig:
    """Tests for SyncConfig class."""

    def test_default_values(self):
        cfg = SyncConfig()
        assert cfg.refresh_interval == 60
        assert cfg.max_concurrent_checks == 5
        assert cfg.remote_cache_ttl == 60.0
        assert cfg.status_stale_after == 300.0
        assert cfg.override_grace_seconds == 1.0
        assert cfg.safety_mode == SafetyMode.SAFE
        assert cfg.extra_protected_ids == []

    def test_from_env(self):
        env_vars = {
            "REFRESH_INTERVAL": "45",
            "MAX_CONCURRENT_CHECKS": "8",
            "REMOTE_CACHE_TTL": "30",
            "STATUS_STALE_AFTER": "600",
            "OVERRIDE_GRACE_SECONDS": "2.5",
            "SAFETY_MODE": "UNSAFE",
            "EXTRA_PROTECTED_IDS": " org.example.one , org.example.two ",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = SyncConfig.from_env()
            assert cfg.refresh_interval == 45
            assert cfg.max_concurrent_checks == 8
            assert cfg.remote_cache_ttl == 30.0
            assert cfg.status_stale_after == 600.0
            assert cfg.override_grace_seconds == 2.5
            assert cfg.safety_mode == SafetyMode.UNSAFE
            assert cfg.extra_protected_ids == ["org.example.one", "org.example.two"]

    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = SyncConfig.from_env()
            assert cfg.refresh_interval == 60
            assert cfg.safety_mode == SafetyMode.SAFE

    def test_from_env_invalid_safety_mode(self):
        with patch.dict(os.environ, {"SAFETY_MODE": "yolo"}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                SyncConfig.from_env()
            assert "SAFETY_MODE" in str(exc_info.value)


class TestAPIConfig:
    """Tests for APIConfig class."""

    def test_default_values(self):
        cfg = APIConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 8000
        assert cfg.log_level == "INFO"
        assert cfg.cors_enabled is False
        assert cfg.cors_origins == ["*"]

    def test_from_env(self):
        env_vars = {
            "API_HOST": "127.0.0.1",
            "API_PORT": "3000",
            "LOG_LEVEL": "DEBUG",
            "CORS_ENABLED": "true",
            "CORS_ORIGINS": "http://localhost:3000,https://example.com",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
            assert cfg.host == "127.0.0.1"
            assert cfg.port == 3000
            assert cfg.log_level == "DEBUG"
            assert cfg.cors_enabled is True
            assert cfg.cors_origins == ["http://localhost:3000", "https://example.com"]

    def test_from_env_no_cors_origins(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = APIConfig.from_env()
            assert cfg.cors_origins == ["*"]


class TestPluginConfig:
    """Tests for PluginConfig class."""

    def test_default_values(self):
        cfg = PluginConfig()
        assert cfg.account_plugin == "stremio"
        assert cfg.enabled_input_plugins == []
        assert cfg.plugin_configs == {}

    def test_from_env(self):
        env_vars = {
            "ACCOUNT_PLUGIN": "custom",
            "ENABLED_INPUT_PLUGINS": " http , sqs ",
            "PLUGIN_CONFIGS": '{"stremio": {"timeout": 5}}',
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = PluginConfig.from_env()
            assert cfg.account_plugin == "custom"
            assert cfg.enabled_input_plugins == ["http", "sqs"]
            assert cfg.plugin_configs == {"stremio": {"timeout": 5}}

    def test_from_env_empty_plugins(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = PluginConfig.from_env()
            assert cfg.account_plugin == "stremio"
            assert cfg.enabled_input_plugins == []

    def test_from_env_invalid_json(self):
        """Test that invalid JSON in PLUGIN_CONFIGS is handled gracefully."""
        with patch.dict(os.environ, {"PLUGIN_CONFIGS": "not valid json"}, clear=False):
            cfg = PluginConfig.from_env()
            assert cfg.plugin_configs == {}

    def test_get_plugin_config(self):
        cfg = PluginConfig(plugin_configs={"stremio": {"timeout": 5}})
        assert cfg.get_plugin_config("stremio") == {"timeout": 5}
        assert cfg.get_plugin_config("nonexistent") == {}


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.sync, SyncConfig)
        assert isinstance(cfg.api, APIConfig)
        assert isinstance(cfg.plugins, PluginConfig)

    def test_from_env(self):
        env_vars = {
            "DB_HOST": "testhost",
            "DB_PASSWORD": "testpass",
            "REFRESH_INTERVAL": "30",
            "API_PORT": "9000",
            "ENABLED_INPUT_PLUGINS": "http",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = Config.from_env()
            assert cfg.database.host == "testhost"
            assert cfg.database.password == "testpass"
            assert cfg.sync.refresh_interval == 30
            assert cfg.api.port == 9000
            assert cfg.plugins.enabled_input_plugins == ["http"]


class TestConfigSingleton:
    """Tests for config singleton functions."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_get_config_loads_if_none(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=True):
            cfg = get_config()
            assert isinstance(cfg, Config)

    def test_singleton_returns_same_instance(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=True):
            cfg1 = load_config()
            cfg2 = get_config()
            assert cfg1 is cfg2

    def test_reset_config(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=True):
            cfg1 = load_config()
            reset_config()
            assert config.config is None
            cfg2 = load_config()
            assert cfg1 is not cfg2
