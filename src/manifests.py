"""
Manifest fetching with caching and request de-duplication.

Manifests are fetched over HTTP when a group addon is saved without one.
Concurrent requests for the same URL share a single fetch, and outgoing
requests are spaced by a minimum interval.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

import aiohttp

from errors import TransportError
from identity import normalize_key
from models import Addon
from validation import validate_manifest

logger = logging.getLogger(__name__)


class InvalidManifest(ValueError):
    """A fetched document is not a usable addon manifest."""


class ManifestFetcher:
    """Fetches and caches addon manifests by URL."""

    def __init__(
        self,
        cache_ttl: float = 300.0,
        min_interval: float = 1.0,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache_ttl = cache_ttl
        self.min_interval = min_interval
        self.timeout = timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._last_request: Optional[float] = None
        self._throttle = asyncio.Lock()

    def invalidate(self, url: Optional[str] = None) -> None:
        """Drop one cached manifest, or all of them."""
        if url is None:
            self._cache.clear()
        else:
            self._cache.pop(normalize_key(url), None)

    async def fetch(self, url: str, force: bool = False) -> Dict[str, Any]:
        """
        Get the manifest at a URL.

        Args:
            url: Manifest URL
            force: Ignore a cached copy

        Returns:
            The manifest document.

        Raises:
            TransportError: If the request fails.
            InvalidManifest: If the response is not a valid manifest.
        """
        key = normalize_key(url)
        now = self._clock()

        cached = self._cache.get(key)
        if not force and cached is not None and now - cached[0] < self.cache_ttl:
            return cached[1]

        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._fetch(url.strip()))
        self._pending[key] = task
        try:
            manifest = await task
        finally:
            self._pending.pop(key, None)

        self._cache[key] = (self._clock(), manifest)
        return manifest

    async def resolve(self, addon: Addon) -> Addon:
        """Return the addon with its manifest, name and version filled in."""
        if addon.manifest is not None:
            return addon

        manifest = await self.fetch(addon.ref.locator)
        return replace(
            addon,
            manifest=manifest,
            name=addon.name or manifest.get("name"),
            version=addon.version or manifest.get("version"),
        )

    async def _wait_turn(self) -> None:
        async with self._throttle:
            if self._last_request is not None:
                wait = self._last_request + self.min_interval - self._clock()
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request = self._clock()

    async def _fetch(self, url: str) -> Dict[str, Any]:
        await self._wait_turn()
        logger.debug(f"Fetching manifest {url}")

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise TransportError(
                            f"Manifest request failed: {response.status}",
                            status_code=response.status,
                        )
                    manifest = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to fetch manifest {url}: {e}")
            raise TransportError(f"Failed to fetch manifest: {e}")
        except ValueError as e:
            raise InvalidManifest(f"Manifest is not valid JSON: {e}")

        is_valid, error = validate_manifest(manifest)
        if not is_valid:
            raise InvalidManifest(f"Invalid manifest at {url}: {error}")
        return manifest
