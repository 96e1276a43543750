"""
Order Manager - reordering of a user's remote addon list.

Reordering is independent of sync evaluation: a committed order is persisted
through a callback and the next status check observes the result.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from identity import normalize_key

logger = logging.getLogger(__name__)

PersistCallback = Callable[[List[str]], Awaitable[None]]


class OrderManager:
    """Holds the current order of a user's remote addons as URL keys."""

    def __init__(
        self,
        current_order: Optional[Sequence[str]] = None,
        persist: Optional[PersistCallback] = None,
    ):
        self.current_order: List[str] = [normalize_key(k) for k in current_order or []]
        self._persist = persist

    def load(self, keys: Sequence[str]) -> None:
        """Replace the order from a fresh remote fetch without persisting."""
        self.current_order = [normalize_key(k) for k in keys]

    def preview(self, from_key: str, to_index: int) -> List[str]:
        """
        Compute the order that moving one addon would produce.

        ``current_order`` is not modified.

        Args:
            from_key: URL key of the addon to move.
            to_index: Target position; clamped to the list bounds.

        Returns:
            The hypothetical new order.

        Raises:
            KeyError: If ``from_key`` is not in the current order.
        """
        key = normalize_key(from_key)
        if key not in self.current_order:
            raise KeyError(from_key)

        order = list(self.current_order)
        order.remove(key)
        to_index = max(0, min(to_index, len(order)))
        order.insert(to_index, key)
        return order

    async def commit(self, new_order: Sequence[str]) -> None:
        """
        Adopt and persist a new order.

        The in-memory order is replaced before persistence and is not rolled
        back if persistence fails; the next fetch reconciles it.

        Args:
            new_order: The full new order of URL keys.

        Raises:
            ValueError: If ``new_order`` contains duplicate keys.
            Exception: Any error raised by the persistence callback.
        """
        order = [normalize_key(k) for k in new_order]
        if len(set(order)) != len(order):
            raise ValueError("Order contains duplicate addon keys")

        self.current_order = order

        if self._persist is None:
            return

        try:
            await self._persist(list(order))
        except Exception as e:
            logger.error(f"Failed to persist addon order: {e}")
            raise

        logger.info(f"Committed order of {len(order)} addons")
