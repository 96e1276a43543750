"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for account and input plugins,
handling discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import logger
from plugins.accounts.base import AccountPlugin
from plugins.inputs.base import InputPlugin

ACCOUNT_ENTRY_POINT_GROUP = "addonsync.accounts"
INPUT_ENTRY_POINT_GROUP = "addonsync.inputs"


class PluginRegistry:
    """
    Central registry for all plugins.

    Plugin classes are registered up front; instances are created and
    initialized on first request and then reused.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._account_plugins: Dict[str, Type[AccountPlugin]] = {}
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}

        # Cached plugin metadata (name, version)
        self._plugin_info: Dict[str, Dict[str, Dict[str, str]]] = {
            "account": {},
            "input": {},
        }

        # Instantiated and initialized plugin instances
        self._account_instances: Dict[str, AccountPlugin] = {}
        self._input_instances: Dict[str, InputPlugin] = {}

        # Plugin configurations loaded from environment
        self._plugin_configs: Dict[str, Dict[str, Dict[str, Any]]] = {
            "account": {},
            "input": {},
        }

    # Registration methods

    def _register(self, kind: str, plugins: Dict[str, Type], plugin_class: Type):
        # Temporary instance to read name/version once
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in plugins:
            logger.warning(f"Overwriting existing {kind} plugin: {name}")

        plugins[name] = plugin_class
        self._plugin_info[kind][name] = {"name": name, "version": version}
        self._plugin_configs[kind][name] = plugin_class.load_config_from_env()
        logger.info(f"Registered {kind} plugin: {name} v{version}")

    def register_account_plugin(self, plugin_class: Type[AccountPlugin]) -> None:
        """
        Register an account plugin class.

        Args:
            plugin_class: The AccountPlugin subclass to register
        """
        self._register("account", self._account_plugins, plugin_class)

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        self._register("input", self._input_plugins, plugin_class)

    # Instantiation methods

    async def get_account_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> AccountPlugin:
        """
        Get an initialized account plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._account_plugins:
            available = ", ".join(self._account_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown account plugin: {name}. Available plugins: {available}"
            )

        if name not in self._account_instances:
            plugin = self._account_plugins[name]()
            await plugin.initialize(config or {})
            self._account_instances[name] = plugin
            logger.info(f"Initialized account plugin: {name}")

        return self._account_instances[name]

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            await plugin.initialize(config or {})
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    # Discovery methods

    def list_account_plugins(self) -> List[str]:
        """List all registered account plugin names."""
        return list(self._account_plugins.keys())

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def has_account_plugin(self, name: str) -> bool:
        return name in self._account_plugins

    def has_input_plugin(self, name: str) -> bool:
        return name in self._input_plugins

    def get_account_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Get 'name' and 'version' of an account plugin, or None."""
        return self._plugin_info["account"].get(name)

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Get 'name' and 'version' of an input plugin, or None."""
        return self._plugin_info["input"].get(name)

    def get_account_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get the env-loaded configuration of an account plugin."""
        return dict(self._plugin_configs["account"].get(name, {}))

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get the env-loaded configuration of an input plugin."""
        return dict(self._plugin_configs["input"].get(name, {}))

    async def close(self) -> None:
        """Close all instantiated account plugins."""
        for name, plugin in self._account_instances.items():
            try:
                await plugin.close()
            except Exception as e:
                logger.error(f"Error closing account plugin '{name}': {e}")
        self._account_instances.clear()


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def _discover(group: str, register) -> None:
    for ep in entry_points(group=group):
        try:
            register(ep.load())
        except Exception as e:
            logger.warning(f"Could not load plugin {ep.name} from {group}: {e}")


def register_builtin_plugins() -> None:
    """
    Register the built-in plugins and discover installed ones via entry
    points.

    Called during application startup.
    """
    registry = get_registry()

    try:
        from plugins.accounts.stremio import StremioAccountPlugin

        registry.register_account_plugin(StremioAccountPlugin)
    except ImportError as e:
        logger.warning(f"Could not load Stremio account plugin: {e}")

    try:
        from plugins.inputs.http import HTTPInputPlugin

        registry.register_input_plugin(HTTPInputPlugin)
    except ImportError as e:
        logger.warning(f"Could not load HTTP input plugin: {e}")

    _discover(ACCOUNT_ENTRY_POINT_GROUP, registry.register_account_plugin)
    _discover(INPUT_ENTRY_POINT_GROUP, registry.register_input_plugin)
