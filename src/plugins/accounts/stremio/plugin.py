"""
Stremio Account Plugin - Implements AccountPlugin for Stremio accounts.

Reads and replaces a user's addon collection through the Stremio API.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from errors import AccountNotLinked, TransportError
from identity import key_of, normalize_key
from models import AccountRef, Addon
from plugins.accounts.base import AccountPlugin
from plugins.accounts.stremio.client import (
    DEFAULT_API_URL,
    StremioAPIError,
    StremioClient,
    parse_collection,
    to_descriptor,
)

logger = logging.getLogger(__name__)


class StremioAccountPlugin(AccountPlugin):
    """Account plugin backed by the Stremio addon collection API."""

    def __init__(self):
        self.api_url: str = DEFAULT_API_URL
        self.timeout: float = 30.0
        self.client: Optional[StremioClient] = None

    @property
    def name(self) -> str:
        return "stremio"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load Stremio plugin configuration from environment variables."""
        return {
            "api_url": os.getenv("STREMIO_API_URL", DEFAULT_API_URL),
            "timeout": float(os.getenv("STREMIO_TIMEOUT", "30")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.api_url = config.get("api_url", self.api_url)
        self.timeout = float(config.get("timeout", self.timeout))
        self.client = StremioClient(api_url=self.api_url, timeout=self.timeout)
        logger.debug(
            f"Stremio plugin initialized: api_url={self.api_url}, "
            f"timeout={self.timeout}s"
        )

    async def _call(self, account: AccountRef, method: str, **params: Any) -> Any:
        if self.client is None:
            raise RuntimeError("Stremio plugin not initialized")

        try:
            return await self.client.request(method, account.auth_key, **params)
        except StremioAPIError as e:
            if e.is_auth_error:
                logger.warning(f"Auth key rejected for user {account.user_id}")
                raise AccountNotLinked(
                    account.user_id, "Invalid or expired Stremio auth key"
                )
            logger.error(f"Stremio {method} failed for user {account.user_id}: {e}")
            raise TransportError(
                f"Stremio {method} failed: {e.message}", status_code=e.status_code
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Stremio {method} request error: {e}")
            raise TransportError(f"Stremio {method} request failed: {e}")

    async def fetch_remote_state(self, account: AccountRef) -> List[Addon]:
        result = await self._call(account, "addonCollectionGet", update=True)
        return parse_collection(result)

    async def install_or_reorder(
        self, account: AccountRef, addons: Sequence[Addon]
    ) -> None:
        descriptors = [to_descriptor(addon) for addon in addons]
        await self._call(account, "addonCollectionSet", addons=descriptors)
        logger.info(
            f"Set {len(descriptors)} addons on account of user {account.user_id}"
        )

    async def remove_addon(self, account: AccountRef, addon_key: str) -> None:
        key = normalize_key(addon_key)
        current = await self.fetch_remote_state(account)
        remaining = [addon for addon in current if key_of(addon) != key]
        if len(remaining) == len(current):
            logger.info(f"Addon {key} not installed for user {account.user_id}")
            return
        await self.install_or_reorder(account, remaining)
