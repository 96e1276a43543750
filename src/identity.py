"""
Addon identity resolution.

An addon is identified first by its URL key and, failing that, by its
logical id combined with manifest content equality.
"""

from typing import Dict, List, Optional, Sequence, Union

from canonical import canonicalize
from models import Addon, AddonRef


def normalize_key(value: Optional[str]) -> str:
    """Normalize a raw URL for use as an identity key."""
    return (value or "").strip().lower()


def key_of(item: Union[Addon, AddonRef]) -> str:
    """
    Return the URL identity key of an addon or reference.

    The key is the first non-empty of manifest_url, transport_url and url,
    trimmed and lower-cased.
    """
    ref = item.ref if isinstance(item, Addon) else item
    for candidate in (ref.manifest_url, ref.transport_url, ref.url):
        key = normalize_key(candidate)
        if key:
            return key
    return ""


def id_of(addon: Addon) -> str:
    """Return the logical id of an addon, or an empty string."""
    if addon.ref.id:
        return addon.ref.id
    if isinstance(addon.manifest, dict):
        manifest_id = addon.manifest.get("id")
        if manifest_id:
            return str(manifest_id)
    return ""


class AddonIndex:
    """
    Lookup structure over an addon list for repeated identity matching.

    Several members may share a logical id (duplicates installed on the
    remote account); a match against any of them is enough.
    """

    def __init__(self, addons: Sequence[Addon]):
        self._addons = list(addons)
        self._by_key: Dict[str, int] = {}
        self._by_id: Dict[str, List[int]] = {}
        self._canonical: Dict[int, str] = {}

        for position, addon in enumerate(self._addons):
            key = key_of(addon)
            if key and key not in self._by_key:
                self._by_key[key] = position
            addon_id = id_of(addon)
            if addon_id:
                self._by_id.setdefault(addon_id, []).append(position)

    def __len__(self) -> int:
        return len(self._addons)

    def _canonical_at(self, position: int) -> str:
        if position not in self._canonical:
            self._canonical[position] = canonicalize(self._addons[position].manifest)
        return self._canonical[position]

    def find(self, addon: Addon) -> Optional[int]:
        """
        Find the position of the member matching ``addon``.

        Args:
            addon: The addon to look for.

        Returns:
            Position of the first matching member, or None if absent.
        """
        key = key_of(addon)
        if key and key in self._by_key:
            return self._by_key[key]

        addon_id = id_of(addon)
        if not addon_id:
            return None

        candidates = self._by_id.get(addon_id)
        if not candidates:
            return None

        wanted = canonicalize(addon.manifest)
        for position in candidates:
            if self._canonical_at(position) == wanted:
                return position
        return None

    def contains(self, addon: Addon) -> bool:
        return self.find(addon) is not None


def find_match(addon: Addon, candidates: Sequence[Addon]) -> Optional[Addon]:
    """Return the member of ``candidates`` matching ``addon``, if any."""
    position = AddonIndex(candidates).find(addon)
    if position is None:
        return None
    return candidates[position]
