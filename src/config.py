"""
Configuration module for addonsync.

Loads configuration from environment variables.
Plugin-specific settings are passed through as JSON.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from models import SafetyMode

logger = logging.getLogger(__name__)


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "addonsync"
    user: str = "addonsync"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "addonsync"),
            user=os.getenv("DB_USER", "addonsync"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class SyncConfig:
    """Status refresh and sync dispatch configuration."""

    refresh_interval: int = 60  # seconds
    max_concurrent_checks: int = 5
    remote_cache_ttl: float = 60.0  # seconds
    status_stale_after: float = 300.0  # seconds
    override_grace_seconds: float = 1.0
    safety_mode: SafetyMode = SafetyMode.SAFE
    extra_protected_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        mode = os.getenv("SAFETY_MODE", "safe").strip().lower()
        try:
            safety_mode = SafetyMode(mode)
        except ValueError:
            raise ValueError(f"SAFETY_MODE must be 'safe' or 'unsafe', got '{mode}'")

        return cls(
            refresh_interval=int(os.getenv("REFRESH_INTERVAL", "60")),
            max_concurrent_checks=int(os.getenv("MAX_CONCURRENT_CHECKS", "5")),
            remote_cache_ttl=float(os.getenv("REMOTE_CACHE_TTL", "60")),
            status_stale_after=float(os.getenv("STATUS_STALE_AFTER", "300")),
            override_grace_seconds=float(os.getenv("OVERRIDE_GRACE_SECONDS", "1.0")),
            safety_mode=safety_mode,
            extra_protected_ids=_split_list(os.getenv("EXTRA_PROTECTED_IDS")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        cors_origins = _split_list(os.getenv("CORS_ORIGINS")) or ["*"]
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=os.getenv("CORS_ENABLED", "false").lower() == "true",
            cors_origins=cors_origins,
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Account plugin used to reach remote accounts
    account_plugin: str = "stremio"

    # Enabled input plugins (empty = use all registered plugins)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PLUGIN_CONFIGS: {e}")

        return cls(
            account_plugin=os.getenv("ACCOUNT_PLUGIN", "stremio"),
            enabled_input_plugins=_split_list(os.getenv("ENABLED_INPUT_PLUGINS")),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    sync: SyncConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            sync=SyncConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            sync=SyncConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
