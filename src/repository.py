"""
Per-user addon set storage (exclusions and protections).

Sets are created empty on first access and updated by full replace only.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, FrozenSet, Iterable

from identity import normalize_key

logger = logging.getLogger(__name__)


class AddonSetKind(Enum):
    """The kinds of per-user addon sets."""

    EXCLUDED = "excluded"
    PROTECTED = "protected"


def normalize_keys(keys: Iterable[str]) -> FrozenSet[str]:
    """Normalize URL keys and drop empty ones."""
    return frozenset(k for k in (normalize_key(key) for key in keys) if k)


class AddonSetRepository(ABC):
    """Loads and saves one kind of per-user addon set."""

    @abstractmethod
    async def get(self, user_id: int) -> FrozenSet[str]:
        """Return the user's set, empty if never written."""
        pass

    @abstractmethod
    async def set(self, user_id: int, keys: Iterable[str]) -> FrozenSet[str]:
        """
        Replace the user's set.

        Returns:
            The normalized set that was stored.
        """
        pass


class DatabaseAddonSetRepository(AddonSetRepository):
    """Addon sets stored in the user_addon_sets table."""

    def __init__(self, db, kind: AddonSetKind):
        self.db = db
        self.kind = kind

    async def get(self, user_id: int) -> FrozenSet[str]:
        keys = await self.db.get_addon_set(user_id, self.kind.value)
        return normalize_keys(keys)

    async def set(self, user_id: int, keys: Iterable[str]) -> FrozenSet[str]:
        normalized = normalize_keys(keys)
        await self.db.set_addon_set(user_id, self.kind.value, sorted(normalized))
        logger.info(
            f"Stored {len(normalized)} {self.kind.value} addon keys for user {user_id}"
        )
        return normalized


class InMemoryAddonSetRepository(AddonSetRepository):
    """Process-local addon sets, used when no database is configured."""

    def __init__(self):
        self._sets: Dict[int, FrozenSet[str]] = {}

    async def get(self, user_id: int) -> FrozenSet[str]:
        return self._sets.get(user_id, frozenset())

    async def set(self, user_id: int, keys: Iterable[str]) -> FrozenSet[str]:
        normalized = normalize_keys(keys)
        self._sets[user_id] = normalized
        return normalized
