"""
Input Plugin Base - Abstract interface for operator-facing inputs.

Input plugins let operators manage groups, users and their addon sets, and
observe sync status:
- HTTP API: REST endpoints and SSE status streams
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from plugins.base import ChangeEvent

# Callback invoked when an input changes configuration that affects sync status
ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins receive configuration changes from external sources and
    notify the application so affected users are re-checked.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_change: ChangeCallback) -> None:
        """
        Start the input plugin.

        Args:
            on_change: Callback to invoke after a group or user changes.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """
        Set the database manager for plugins that need database access.

        Args:
            db_manager: The DatabaseManager instance
        """
        pass

    def set_dispatcher(self, dispatcher: Any) -> None:
        """
        Set the sync dispatcher for plugins that read or change sync state.

        The dispatcher also carries the status bus used for streaming.

        Args:
            dispatcher: The SyncDispatcher instance
        """
        pass
