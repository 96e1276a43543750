"""
Minimal client for the Stremio API.

Every call is a JSON POST to ``{api_url}/api/{method}`` carrying the method's
type name and the account auth key. Responses wrap either ``result`` or
``error``.
"""

import copy
import logging
import re
from typing import Any, Dict, List, Optional

import aiohttp

from models import Addon

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.strem.io"

_AUTH_ERROR_PATTERN = re.compile(r"session does not exist|invalid", re.IGNORECASE)


class StremioAPIError(Exception):
    """An error reported by the Stremio API or its transport."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_auth_error(self) -> bool:
        """Whether the error means the auth key is no longer valid."""
        return self.code == 1 or bool(_AUTH_ERROR_PATTERN.search(self.message))


class StremioClient:
    """Issues Stremio API requests for a given auth key."""

    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    async def request(self, method: str, auth_key: str, **params: Any) -> Any:
        """
        Call an API method.

        Args:
            method: Method name, e.g. 'addonCollectionGet'
            auth_key: Account auth key
            **params: Extra request fields

        Returns:
            The ``result`` member of the response.

        Raises:
            StremioAPIError: If the API returns an error or a non-JSON body.
            aiohttp.ClientError: On network failure.
        """
        url = f"{self.api_url}/api/{method}"
        payload: Dict[str, Any] = {
            "type": method[0].upper() + method[1:],
            "authKey": auth_key,
        }
        payload.update(params)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                if response.status >= 400:
                    message = _error_message(data) or f"HTTP {response.status}"
                    raise StremioAPIError(
                        message,
                        code=_error_code(data),
                        status_code=response.status,
                    )

        if not isinstance(data, dict):
            raise StremioAPIError(f"Unexpected response from {method}")

        if data.get("error"):
            raise StremioAPIError(
                _error_message(data) or "Unknown API error", code=_error_code(data)
            )

        return data.get("result")


def _error_message(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "") or None
    if error:
        return str(error)
    return str(data.get("message") or "") or None


def _error_code(data: Any) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    code = error.get("code") if isinstance(error, dict) else data.get("code")
    return code if isinstance(code, int) else None


def parse_collection(result: Any) -> List[Addon]:
    """
    Convert an addonCollectionGet result into addons.

    A null collection is treated as empty, and a mapping of descriptors is
    read in value order. Descriptors without any locator are skipped. Each
    addon keeps a copy of its descriptor for writing back.
    """
    raw = result.get("addons") if isinstance(result, dict) else result
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = list(raw.values())
    if not isinstance(raw, list):
        logger.warning(f"Ignoring unexpected addon collection type: {type(raw)}")
        return []

    addons = []
    for descriptor in raw:
        if not isinstance(descriptor, dict):
            continue
        try:
            addon = Addon.from_dict(descriptor)
        except ValueError:
            logger.warning("Skipping remote addon without a transport URL")
            continue
        addon.descriptor = copy.deepcopy(descriptor)
        addons.append(addon)
    return addons


def to_descriptor(addon: Addon) -> Dict[str, Any]:
    """
    Convert an addon into a collection descriptor for addonCollectionSet.

    Addons read from the account are sent back with their original
    descriptor so that flags such as 'official' or 'protected' survive.
    """
    if addon.descriptor:
        return copy.deepcopy(addon.descriptor)

    manifest = dict(addon.manifest or {})
    if not manifest:
        if addon.ref.id:
            manifest["id"] = addon.ref.id
        if addon.name:
            manifest["name"] = addon.name
        if addon.version:
            manifest["version"] = addon.version
    return {
        "transportUrl": addon.ref.transport_url or addon.ref.locator,
        "transportName": "",
        "manifest": manifest,
        "flags": {},
    }
