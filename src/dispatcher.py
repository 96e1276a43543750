"""
Sync Dispatcher - turns verdicts into status and convergence actions.

Owns the per-user caches (remote state, status, addon order), serializes
mutations per user, and runs the periodic status refresh loop.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from config import SyncConfig
from desired import build_desired, pin_protected
from engine import aggregate_group_status, evaluate, verdict_to_status
from errors import AccountNotLinked, Busy, TransportError
from events import EventType, StatusBus
from identity import key_of, normalize_key
from models import AccountRef, Addon, AddonRef, SyncStatus, SyncVerdict
from ordering import OrderManager
from protection import Mutation, ProtectionPolicy
from repository import AddonSetRepository

logger = logging.getLogger(__name__)


@dataclass
class StatusReport:
    """A user's sync status as seen by observers."""

    user_id: int
    status: SyncStatus
    verdict: Optional[SyncVerdict] = None
    age_seconds: Optional[float] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "age_seconds": self.age_seconds,
            "message": self.message,
        }


@dataclass
class GroupStatusReport:
    """Aggregated status of a group's members."""

    group_id: int
    status: SyncStatus
    members: Dict[int, SyncStatus] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "status": self.status.value,
            "members": {str(uid): s.value for uid, s in self.members.items()},
        }


@dataclass
class _RemoteEntry:
    addons: List[Addon]
    fetched_at: float


@dataclass
class _StatusEntry:
    status: SyncStatus
    checked_at: float
    verdict: Optional[SyncVerdict] = None
    message: Optional[str] = None
    override_until: Optional[float] = None


def _reasons(entry: _StatusEntry) -> List[str]:
    return entry.verdict.reasons if entry.verdict else []


def _unique_keys(addons: Iterable[Addon]) -> List[str]:
    # Duplicate installs of one URL share a single order slot
    return list(dict.fromkeys(key_of(a) for a in addons))


class SyncDispatcher:
    """
    Dispatches sync, set and order mutations for users.

    At most one mutation is in flight per user; a second request for the same
    user is rejected with ``Busy``. Different users proceed independently.
    """

    def __init__(
        self,
        db,
        account,
        exclusions: AddonSetRepository,
        protections: AddonSetRepository,
        bus: Optional[StatusBus] = None,
        config: Optional[SyncConfig] = None,
        policy: Optional[ProtectionPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.account = account
        self.exclusions = exclusions
        self.protections = protections
        self.bus = bus or StatusBus()
        self.config = config or SyncConfig()
        self.policy = policy or ProtectionPolicy()
        self.mode = self.config.safety_mode
        self._clock = clock

        self._pending: Set[int] = set()
        self._syncing: Set[int] = set()
        self._remote: Dict[int, _RemoteEntry] = {}
        self._statuses: Dict[int, _StatusEntry] = {}
        self._orders: Dict[int, OrderManager] = {}

        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_checks)
        self.running = False
        self._shutdown_event = asyncio.Event()

    # ==================== Per-user serialization ====================

    @asynccontextmanager
    async def _user_slot(self, user_id: int):
        if user_id in self._pending:
            logger.info(f"Rejected operation for user {user_id}: busy")
            raise Busy(user_id)
        self._pending.add(user_id)
        try:
            yield
        finally:
            self._pending.discard(user_id)

    def is_pending(self, user_id: int) -> bool:
        return user_id in self._pending

    # ==================== Remote state and desired set ====================

    async def _account_ref(self, user_id: int) -> AccountRef:
        ref = await self.db.get_account_ref(user_id)
        if ref is None or not ref.auth_key:
            raise AccountNotLinked(user_id)
        return ref

    async def get_remote_state(self, user_id: int, force: bool = False) -> List[Addon]:
        """
        Return the user's remote addons, fetching when the cache is cold.

        Raises:
            AccountNotLinked: If the user has no linked account.
            TransportError: If the fetch fails.
        """
        now = self._clock()
        entry = self._remote.get(user_id)
        if (
            not force
            and entry is not None
            and now - entry.fetched_at < self.config.remote_cache_ttl
        ):
            return list(entry.addons)

        ref = await self._account_ref(user_id)
        addons = list(await self.account.fetch_remote_state(ref))
        self._remote[user_id] = _RemoteEntry(addons=addons, fetched_at=now)
        self._order_manager(user_id).load(_unique_keys(addons))
        logger.debug(f"Fetched {len(addons)} remote addons for user {user_id}")
        return list(addons)

    def invalidate_remote(self, user_id: int) -> None:
        self._remote.pop(user_id, None)

    async def get_desired(
        self, user_id: int, exclusion_set: Optional[Iterable[str]] = None
    ) -> List[Addon]:
        """Return the user's desired addons from their group and exclusions."""
        group_addons = await self.db.get_user_group_addons(user_id)
        if exclusion_set is None:
            exclusion_set = await self.exclusions.get(user_id)
        return build_desired(group_addons, frozenset(exclusion_set))

    async def evaluate_user(self, user_id: int, force: bool = False) -> SyncVerdict:
        """Evaluate the user's desired addons against their remote state."""
        desired = await self.get_desired(user_id)
        remote = await self.get_remote_state(user_id, force=force)
        protected = await self.protections.get(user_id)
        return evaluate(desired, remote, protected, self.mode, self.policy)

    # ==================== Status cache ====================

    def _override_active(self, entry: Optional[_StatusEntry], now: float) -> bool:
        return (
            entry is not None
            and entry.override_until is not None
            and now < entry.override_until
        )

    def _report(self, user_id: int, entry: _StatusEntry, now: float) -> StatusReport:
        return StatusReport(
            user_id=user_id,
            status=entry.status,
            verdict=entry.verdict,
            age_seconds=round(now - entry.checked_at, 3),
            message=entry.message,
        )

    def _syncing_report(
        self, user_id: int, entry: Optional[_StatusEntry]
    ) -> StatusReport:
        return StatusReport(
            user_id=user_id,
            status=SyncStatus.SYNCING,
            verdict=entry.verdict if entry else None,
        )

    async def _store(
        self, user_id: int, entry: _StatusEntry, always_publish: bool = False
    ) -> None:
        previous = self._statuses.get(user_id)
        self._statuses[user_id] = entry

        changed = (
            previous is None
            or previous.status != entry.status
            or _reasons(previous) != _reasons(entry)
        )
        if changed or always_publish:
            await self.bus.publish(
                user_id,
                entry.status,
                message=entry.message,
                verdict=entry.verdict.to_dict() if entry.verdict else None,
            )

    async def invalidate_status(self, user_id: int) -> None:
        """Drop the cached status and tell observers a re-check is due."""
        self._statuses.pop(user_id, None)
        await self.bus.publish(
            user_id, SyncStatus.CHECKING, event_type=EventType.INVALIDATED
        )

    def get_status(self, user_id: int) -> StatusReport:
        """
        Return the cached status without evaluating.

        A verdict older than ``status_stale_after`` is reported stale; an
        unknown user is reported as checking.
        """
        now = self._clock()
        entry = self._statuses.get(user_id)
        if user_id in self._syncing:
            return self._syncing_report(user_id, entry)
        if entry is None:
            return StatusReport(user_id=user_id, status=SyncStatus.CHECKING)

        report = self._report(user_id, entry, now)
        if self._override_active(entry, now):
            return report

        if (
            entry.status in (SyncStatus.SYNCED, SyncStatus.UNSYNCED)
            and now - entry.checked_at > self.config.status_stale_after
        ):
            report.status = SyncStatus.STALE
        return report

    async def check_status(self, user_id: int, force: bool = False) -> StatusReport:
        """
        Evaluate and cache the user's status.

        An active manual override is returned as-is. A user without a linked
        account is reported as ``connect``.

        Args:
            user_id: The user to check.
            force: Bypass the remote state cache.

        Raises:
            TransportError: If the remote state could not be fetched.
        """
        now = self._clock()
        entry = self._statuses.get(user_id)
        if user_id in self._syncing:
            return self._syncing_report(user_id, entry)
        if self._override_active(entry, now):
            return self._report(user_id, entry, now)

        try:
            verdict = await self.evaluate_user(user_id, force=force)
        except AccountNotLinked as e:
            entry = _StatusEntry(
                status=SyncStatus.CONNECT, checked_at=now, message=e.message
            )
        except TransportError as e:
            logger.warning(f"Remote fetch failed for user {user_id}: {e.message}")
            raise
        else:
            entry = _StatusEntry(
                status=verdict_to_status(verdict), checked_at=now, verdict=verdict
            )

        await self._store(user_id, entry)
        return self._report(user_id, entry, now)

    async def force_status(
        self, user_id: int, status: SyncStatus, message: Optional[str] = None
    ) -> StatusReport:
        """
        Set a user's status manually.

        The status is honored for ``override_grace_seconds``; afterwards
        normal evaluation may replace it.
        """
        now = self._clock()
        previous = self._statuses.get(user_id)
        entry = _StatusEntry(
            status=status,
            checked_at=now,
            verdict=previous.verdict if previous else None,
            message=message,
            override_until=now + self.config.override_grace_seconds,
        )
        await self._store(user_id, entry, always_publish=True)
        return self._report(user_id, entry, now)

    async def mark_stale(self, user_id: int, message: Optional[str] = None) -> None:
        now = self._clock()
        previous = self._statuses.get(user_id)
        if self._override_active(previous, now):
            return
        entry = _StatusEntry(
            status=SyncStatus.STALE,
            checked_at=previous.checked_at if previous else now,
            verdict=previous.verdict if previous else None,
            message=message,
        )
        await self._store(user_id, entry)

    # ==================== Convergence ====================

    async def request_sync(
        self, user_id: int, exclusion_set: Optional[Iterable[str]] = None
    ) -> SyncVerdict:
        """
        Install the user's desired addons on their account.

        Protected remote addons keep their positions. On success the status is
        marked synced immediately and the remote cache is dropped.

        Args:
            user_id: The user to sync.
            exclusion_set: Exclusions to apply; defaults to the stored set.

        Returns:
            The synced verdict recorded for the user.

        Raises:
            Busy: If an operation is already in flight for the user.
            AccountNotLinked: If the user has no linked account.
            TransportError: If the remote update fails.
        """
        async with self._user_slot(user_id):
            previous = self._statuses.get(user_id)
            self._syncing.add(user_id)
            await self.bus.publish(user_id, SyncStatus.SYNCING)

            try:
                ref = await self._account_ref(user_id)
                desired = await self.get_desired(user_id, exclusion_set)
                remote = await self.get_remote_state(user_id, force=True)
                protected = await self.protections.get(user_id)
                target = pin_protected(
                    desired,
                    remote,
                    lambda addon: self.policy.is_protected(addon, protected, self.mode),
                )
                await self.account.install_or_reorder(ref, target)
            except Exception as e:
                logger.error(f"Sync failed for user {user_id}: {e}")
                if previous is not None:
                    self._statuses[user_id] = previous
                else:
                    self._statuses.pop(user_id, None)
                if isinstance(e, AccountNotLinked):
                    status = SyncStatus.CONNECT
                else:
                    status = SyncStatus.UNSYNCED
                await self.bus.publish(user_id, status, message=str(e))
                raise
            finally:
                self._syncing.discard(user_id)

            # Grace window starts once the install has landed
            now = self._clock()
            verdict = SyncVerdict()
            self.invalidate_remote(user_id)
            await self._store(
                user_id,
                _StatusEntry(
                    status=SyncStatus.SYNCED,
                    checked_at=now,
                    verdict=verdict,
                    override_until=now + self.config.override_grace_seconds,
                ),
                always_publish=True,
            )
            logger.info(f"Synced {len(target)} addons for user {user_id}")
            return verdict

    async def remove_addon(self, user_id: int, addon_key: str) -> None:
        """
        Remove an addon from the user's account.

        Raises:
            KeyError: If the addon is not installed on the account.
            PolicyViolation: If the addon is protected in safe mode.
        """
        key = normalize_key(addon_key)
        async with self._user_slot(user_id):
            ref = await self._account_ref(user_id)
            remote = await self.get_remote_state(user_id)
            addon = next((a for a in remote if key_of(a) == key), None)
            if addon is None:
                raise KeyError(addon_key)

            protected = await self.protections.get(user_id)
            self.policy.check_mutation(addon, Mutation.DELETE, protected, self.mode)

            await self.account.remove_addon(ref, key)
            self.invalidate_remote(user_id)
            logger.info(f"Removed addon {key} for user {user_id}")

        await self._refresh_after_change(user_id)

    # ==================== Exclusion and protection sets ====================

    async def _replace_set(
        self, user_id: int, repo: AddonSetRepository, keys: Iterable[str]
    ) -> FrozenSet[str]:
        stored = await repo.set(user_id, keys)
        await self.invalidate_status(user_id)
        return stored

    async def _refresh_after_change(self, user_id: int) -> None:
        try:
            await self.check_status(user_id)
        except TransportError as e:
            await self.mark_stale(user_id, message=e.message)

    async def replace_exclusions(
        self, user_id: int, keys: Iterable[str]
    ) -> FrozenSet[str]:
        """Replace the user's exclusion set."""
        async with self._user_slot(user_id):
            stored = await self._replace_set(user_id, self.exclusions, keys)
        await self._refresh_after_change(user_id)
        return stored

    async def toggle_exclusion(self, user_id: int, addon_key: str) -> FrozenSet[str]:
        """Add or remove a key from the user's exclusion set."""
        key = normalize_key(addon_key)
        async with self._user_slot(user_id):
            current = set(await self.exclusions.get(user_id))
            current.symmetric_difference_update({key})
            stored = await self._replace_set(user_id, self.exclusions, current)
        await self._refresh_after_change(user_id)
        return stored

    def _addon_for_key(self, user_id: int, key: str) -> Addon:
        entry = self._remote.get(user_id)
        if entry is not None:
            for addon in entry.addons:
                if key_of(addon) == key:
                    return addon
        return Addon(ref=AddonRef(manifest_url=key))

    def _check_unprotect(
        self, user_id: int, removed: Iterable[str], current: FrozenSet[str]
    ) -> None:
        for key in removed:
            addon = self._addon_for_key(user_id, key)
            self.policy.check_mutation(addon, Mutation.UNPROTECT, current, self.mode)

    async def replace_protections(
        self, user_id: int, keys: Iterable[str]
    ) -> FrozenSet[str]:
        """
        Replace the user's protection set.

        Raises:
            PolicyViolation: If a built-in protected addon would be
                un-protected in safe mode. Nothing is stored.
        """
        wanted = {normalize_key(k) for k in keys}
        async with self._user_slot(user_id):
            current = await self.protections.get(user_id)
            self._check_unprotect(user_id, current - wanted, current)
            stored = await self._replace_set(user_id, self.protections, wanted)
        await self._refresh_after_change(user_id)
        return stored

    async def toggle_protection(self, user_id: int, addon_key: str) -> FrozenSet[str]:
        """Add or remove a key from the user's protection set."""
        key = normalize_key(addon_key)
        async with self._user_slot(user_id):
            current = await self.protections.get(user_id)
            if key in current:
                self._check_unprotect(user_id, [key], current)
                wanted = current - {key}
            else:
                wanted = current | {key}
            stored = await self._replace_set(user_id, self.protections, wanted)
        await self._refresh_after_change(user_id)
        return stored

    # ==================== Ordering ====================

    def _order_manager(self, user_id: int) -> OrderManager:
        if user_id not in self._orders:

            async def persist(order: List[str]) -> None:
                await self._persist_order(user_id, order)

            self._orders[user_id] = OrderManager(persist=persist)
        return self._orders[user_id]

    async def _persist_order(self, user_id: int, order: List[str]) -> None:
        ref = await self._account_ref(user_id)
        remote = await self.get_remote_state(user_id)
        by_key: Dict[str, List[Addon]] = {}
        for addon in remote:
            by_key.setdefault(key_of(addon), []).append(addon)
        await self.account.install_or_reorder(
            ref, [addon for k in order for addon in by_key[k]]
        )
        self.invalidate_remote(user_id)

    async def preview_order(
        self, user_id: int, from_key: str, to_index: int
    ) -> List[str]:
        """Compute the order that moving one remote addon would produce."""
        await self.get_remote_state(user_id)
        return self._order_manager(user_id).preview(from_key, to_index)

    async def reorder(self, user_id: int, ordered_keys: Iterable[str]) -> List[str]:
        """
        Reorder the user's remote addons.

        Keys not listed keep their relative order after the listed ones.

        Raises:
            ValueError: If a key is not installed or is listed twice.
        """
        keys = [normalize_key(k) for k in ordered_keys]
        async with self._user_slot(user_id):
            remote = await self.get_remote_state(user_id, force=True)
            installed = _unique_keys(remote)
            unknown = [k for k in keys if k not in installed]
            if unknown:
                raise ValueError(f"Addons not installed: {', '.join(unknown)}")

            order = keys + [k for k in installed if k not in keys]
            manager = self._order_manager(user_id)
            await manager.commit(order)
            committed = list(manager.current_order)
            logger.info(f"Reordered {len(order)} addons for user {user_id}")

        await self._refresh_after_change(user_id)
        return committed

    # ==================== Groups ====================

    async def check_group_status(self, group_id: int) -> GroupStatusReport:
        """Check every member of a group and aggregate their statuses."""
        member_ids = await self.db.get_group_user_ids(group_id)
        members: Dict[int, SyncStatus] = {}
        for user_id in member_ids:
            try:
                report = await self.check_status(user_id)
            except TransportError:
                report = self.get_status(user_id)
                report.status = SyncStatus.STALE
            members[user_id] = report.status
        return GroupStatusReport(
            group_id=group_id,
            status=aggregate_group_status(members.values()),
            members=members,
        )

    # ==================== Periodic refresh ====================

    async def start(self):
        """Run the periodic status refresh loop until stopped."""
        logger.info("Starting sync dispatcher")
        self.running = True
        self._shutdown_event.clear()
        await self._refresh_loop()

    async def stop(self):
        """Stop the refresh loop."""
        logger.info("Stopping sync dispatcher")
        self.running = False
        self._shutdown_event.set()

    async def _refresh_loop(self):
        while self.running:
            try:
                await self.refresh_all()
            except Exception as e:
                logger.error(f"Error in refresh loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.refresh_interval
                )
            except asyncio.TimeoutError:
                pass

    async def refresh_all(self) -> None:
        """Re-check every user with a linked account."""
        user_ids = await self.db.list_linked_user_ids()
        if user_ids:
            logger.info(f"Refreshing status for {len(user_ids)} users")
        await self.refresh_users(user_ids)

    async def refresh_users(self, user_ids: Iterable[int]) -> None:
        """Re-check the given users with bounded concurrency."""
        await asyncio.gather(
            *(self._refresh_user(user_id) for user_id in user_ids),
            return_exceptions=True,
        )

    async def _refresh_user(self, user_id: int) -> None:
        async with self.semaphore:
            if self.is_pending(user_id):
                return
            try:
                await self.check_status(user_id, force=True)
            except TransportError as e:
                await self.mark_stale(user_id, message=e.message)
            except Exception as e:
                logger.error(f"Error refreshing user {user_id}: {e}", exc_info=True)
