"""Desired-set construction from a group's addon list."""

from collections import deque
from typing import AbstractSet, Callable, Dict, List, Sequence, Set

from identity import AddonIndex, key_of, normalize_key
from models import Addon


def build_desired(
    group_addons: Sequence[Addon], exclusion_set: AbstractSet[str]
) -> List[Addon]:
    """
    Derive the ordered addons a user should have.

    Keeps enabled group addons whose URL key is not excluded for the user,
    in group order. An addon listed twice under one URL key is kept once, at
    its first position. The group list itself is not modified.

    Args:
        group_addons: The group's ordered addon list.
        exclusion_set: URL keys the user has excluded.

    Returns:
        A new list; empty when nothing is required.
    """
    excluded = {normalize_key(k) for k in exclusion_set}
    seen: Set[str] = set()
    desired: List[Addon] = []
    for addon in group_addons:
        key = key_of(addon)
        if not addon.is_enabled or key in excluded:
            continue
        if key:
            if key in seen:
                continue
            seen.add(key)
        desired.append(addon)
    return desired


def pin_protected(
    desired: Sequence[Addon],
    remote: Sequence[Addon],
    is_protected: Callable[[Addon], bool],
) -> List[Addon]:
    """
    Build the collection to install on an account.

    Protected remote addons keep their current positions; the remaining
    slots are filled with the desired addons in order. Desired addons that
    are already pinned are not installed twice.

    Args:
        desired: The user's desired addons.
        remote: The account's current addons.
        is_protected: Predicate deciding whether a remote addon is pinned.

    Returns:
        The full ordered collection.
    """
    pinned: Dict[int, Addon] = {
        position: addon
        for position, addon in enumerate(remote)
        if is_protected(addon)
    }
    pinned_index = AddonIndex(list(pinned.values()))
    queue = deque(addon for addon in desired if not pinned_index.contains(addon))

    result: List[Addon] = []
    position = 0
    while pinned or queue:
        if position in pinned:
            result.append(pinned.pop(position))
        elif queue:
            result.append(queue.popleft())
        else:
            # Only pinned addons past the end remain
            result.extend(pinned[p] for p in sorted(pinned))
            break
        position += 1
    return result
