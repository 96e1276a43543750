"""
Protection Policy - decides which addons are exempt from drift checks.

Protection comes from a fixed built-in list of default account addons plus a
per-user set of URL keys marked protected by the operator. It is never
inferred from remote data.
"""

import logging
from enum import Enum
from typing import AbstractSet, Iterable, Optional, Tuple

from errors import PolicyViolation
from identity import id_of, key_of, normalize_key
from models import Addon, SafetyMode

logger = logging.getLogger(__name__)

# Default addons installed on every account by the content provider
BUILTIN_PROTECTED_IDS: Tuple[str, ...] = (
    "com.linvo.cinemeta",  # Cinemeta
    "org.stremio.local",  # Local Files
)

BUILTIN_PROTECTED_URLS: Tuple[str, ...] = (
    "https://v3-cinemeta.strem.io/manifest.json",
    "http://127.0.0.1:11470/local-addon/manifest.json",
)


class Mutation(Enum):
    """Mutations that the policy may gate."""

    DELETE = "delete"
    PROTECT = "protect"
    UNPROTECT = "unprotect"


class ProtectionPolicy:
    """
    Built-in plus user-declared addon protection.

    In ``SAFE`` mode the built-in list applies and mutations of protected
    addons are gated. In ``UNSAFE`` mode only user-declared protection is
    considered and every mutation is permitted.
    """

    def __init__(
        self,
        builtin_ids: Iterable[str] = BUILTIN_PROTECTED_IDS,
        builtin_urls: Iterable[str] = BUILTIN_PROTECTED_URLS,
    ):
        self.builtin_ids = tuple(i for i in builtin_ids if i)
        self.builtin_urls = tuple(normalize_key(u) for u in builtin_urls if u)

    def is_builtin_protected(self, addon: Addon) -> bool:
        """
        Check the built-in list by id, exact URL, or URL substring.

        Provider URLs sometimes embed the addon id as a path segment, so a
        URL containing a protected id or URL fragment counts as protected.
        """
        addon_id = id_of(addon)
        if addon_id and addon_id in self.builtin_ids:
            return True

        url = key_of(addon)
        if not url:
            return False
        if url in self.builtin_urls:
            return True

        return any(i.lower() in url for i in self.builtin_ids) or any(
            u in url for u in self.builtin_urls
        )

    def is_user_protected(self, addon: Addon, protection_set: AbstractSet[str]) -> bool:
        key = key_of(addon)
        return bool(key) and key in {normalize_key(k) for k in protection_set}

    def is_protected(
        self,
        addon: Addon,
        protection_set: AbstractSet[str],
        mode: SafetyMode = SafetyMode.SAFE,
    ) -> bool:
        """
        Check whether an addon is protected.

        Args:
            addon: The addon to check.
            protection_set: The user's protected URL keys.
            mode: Active safety mode; the built-in list only applies in SAFE.

        Returns:
            True if built-in protected (SAFE mode) or user-declared protected.
        """
        if mode == SafetyMode.SAFE and self.is_builtin_protected(addon):
            return True
        return self.is_user_protected(addon, protection_set)

    def protection_reason(
        self, addon: Addon, protection_set: AbstractSet[str]
    ) -> Optional[str]:
        """Return 'builtin', 'user', or None."""
        if self.is_builtin_protected(addon):
            return "builtin"
        if self.is_user_protected(addon, protection_set):
            return "user"
        return None

    def check_mutation(
        self,
        addon: Addon,
        mutation: Mutation,
        protection_set: AbstractSet[str],
        mode: SafetyMode = SafetyMode.SAFE,
    ) -> None:
        """
        Enforce the safety mode for a mutation.

        Raises:
            PolicyViolation: In SAFE mode, when deleting a protected addon or
                un-protecting a built-in protected addon.
        """
        if mode == SafetyMode.UNSAFE:
            return

        key = key_of(addon)
        if mutation == Mutation.DELETE:
            reason = self.protection_reason(addon, protection_set)
            if reason is not None:
                logger.warning(f"Blocked delete of {reason}-protected addon {key}")
                raise PolicyViolation(key, mutation.value, f"{reason}-protected addon")
        elif mutation == Mutation.UNPROTECT:
            if self.is_builtin_protected(addon):
                logger.warning(f"Blocked unprotect of built-in addon {key}")
                raise PolicyViolation(key, mutation.value, "built-in protected addon")
