"""
Sync Status Engine - compares desired addons against observed remote state.

The single place where desired/remote comparison happens. ``evaluate`` is a
pure function: it reads protection state but never enforces it, never
performs I/O, and never raises for well-formed inputs.
"""

from typing import AbstractSet, Iterable, Optional, Sequence

from identity import AddonIndex, normalize_key
from models import Addon, SafetyMode, SyncStatus, SyncVerdict, VerdictStatus
from protection import ProtectionPolicy

_default_policy = ProtectionPolicy()


def evaluate(
    desired: Sequence[Addon],
    remote: Sequence[Addon],
    protection_set: AbstractSet[str] = frozenset(),
    mode: SafetyMode = SafetyMode.SAFE,
    policy: Optional[ProtectionPolicy] = None,
) -> SyncVerdict:
    """
    Classify a desired/remote pair as synced or unsynced.

    Checks run cheapest first, but every failing check is still evaluated so
    that the verdict carries the full diagnostic detail.

    Args:
        desired: Ordered addons the account should contain.
        remote: Ordered addons observed on the account.
        protection_set: User-declared protected URL keys.
        mode: Safety mode used to decide built-in protection.
        policy: Protection policy; defaults to the built-in list.

    Returns:
        A SyncVerdict with missing, misordered and extras populated.
    """
    policy = policy or _default_policy

    # Nothing required, nothing to violate
    if not desired:
        return SyncVerdict(status=VerdictStatus.SYNCED)

    if not remote:
        return SyncVerdict(
            status=VerdictStatus.UNSYNCED,
            missing=[addon.ref for addon in desired],
        )

    protected = frozenset(normalize_key(k) for k in protection_set)

    # Presence: a desired addon may legitimately be a protected default
    remote_index = AddonIndex(remote)
    missing = [addon.ref for addon in desired if not remote_index.contains(addon)]

    # Order: protected remote addons are not position anchors
    unprotected = [
        addon for addon in remote if not policy.is_protected(addon, protected, mode)
    ]
    unprotected_index = AddonIndex(unprotected)
    misordered = False
    previous = -1
    for addon in desired:
        position = unprotected_index.find(addon)
        if position is None:
            continue
        if position <= previous:
            misordered = True
        previous = position

    # Extras: only non-protected remote addons can be extras
    desired_index = AddonIndex(desired)
    extras = [addon.ref for addon in unprotected if not desired_index.contains(addon)]

    if missing or misordered or extras:
        status = VerdictStatus.UNSYNCED
    else:
        status = VerdictStatus.SYNCED

    return SyncVerdict(
        status=status,
        missing=missing,
        misordered=misordered,
        extras=extras,
    )


def verdict_to_status(verdict: SyncVerdict) -> SyncStatus:
    return SyncStatus.SYNCED if verdict.is_synced else SyncStatus.UNSYNCED


def aggregate_group_status(statuses: Iterable[SyncStatus]) -> SyncStatus:
    """
    Combine member statuses into a group status.

    A group is synced only when every member is synced. A group without
    members is reported stale.
    """
    statuses = list(statuses)
    if not statuses:
        return SyncStatus.STALE
    if all(s == SyncStatus.SYNCED for s in statuses):
        return SyncStatus.SYNCED
    return SyncStatus.UNSYNCED
