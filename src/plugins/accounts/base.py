"""
Account Plugin Base - Abstract interface for remote addon accounts.

Account plugins read and write the ordered addon collection installed on a
user's remote account. The default shipped plugin talks to the Stremio API.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

from models import AccountRef, Addon


class AccountPlugin(ABC):
    """
    Abstract base class for account plugins.

    Implementations raise ``AccountNotLinked`` when the account cannot be
    accessed with the stored credentials and ``TransportError`` for any other
    remote failure.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'stremio')."""
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
    async def fetch_remote_state(self, account: AccountRef) -> List[Addon]:
        """
        Fetch the addons installed on an account, in install order.

        Args:
            account: The account to read

        Returns:
            The full ordered addon list.
        """
        pass

    @abstractmethod
    async def install_or_reorder(
        self, account: AccountRef, addons: Sequence[Addon]
    ) -> None:
        """
        Replace the account's addon collection.

        Args:
            account: The account to write
            addons: The full collection, in install order
        """
        pass

    @abstractmethod
    async def remove_addon(self, account: AccountRef, addon_key: str) -> None:
        """
        Remove one addon from the account.

        Args:
            account: The account to write
            addon_key: URL key of the addon to remove
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the plugin."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
