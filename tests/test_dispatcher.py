"""Unit tests for dispatcher.py - Sync dispatcher."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from config import SyncConfig
from conftest import make_addon, make_remote
from dispatcher import GroupStatusReport, StatusReport, SyncDispatcher
from errors import AccountNotLinked, Busy, PolicyViolation, TransportError
from events import EventType
from identity import key_of
from models import AccountRef, SafetyMode, SyncStatus, SyncVerdict
from repository import InMemoryAddonSetRepository

CINEMETA_URL = "https://v3-cinemeta.strem.io/manifest.json"


@pytest.fixture
def db():
    db = AsyncMock()
    db.get_account_ref.return_value = AccountRef(user_id=1, auth_key="key")
    db.get_user_group_addons.return_value = [
        make_addon("https://a"),
        make_addon("https://b"),
    ]
    db.get_group_user_ids.return_value = [1]
    db.list_linked_user_ids.return_value = [1]
    return db


@pytest.fixture
def account():
    account = AsyncMock()
    account.fetch_remote_state.return_value = [
        make_remote("https://a"),
        make_remote("https://b"),
    ]
    return account


def build_dispatcher(db, account, clock, **overrides):
    settings = dict(
        remote_cache_ttl=60.0,
        status_stale_after=300.0,
        override_grace_seconds=1.0,
        refresh_interval=3600,
    )
    settings.update(overrides)
    return SyncDispatcher(
        db=db,
        account=account,
        exclusions=InMemoryAddonSetRepository(),
        protections=InMemoryAddonSetRepository(),
        config=SyncConfig(**settings),
        clock=clock,
    )


@pytest.fixture
def dispatcher(db, account, clock):
    return build_dispatcher(db, account, clock)


class TestReports:
    """Tests for report dataclasses."""

    def test_status_report_to_dict(self):
        report = StatusReport(user_id=1, status=SyncStatus.SYNCED, verdict=SyncVerdict())
        data = report.to_dict()
        assert data["status"] == "synced"
        assert data["verdict"]["status"] == "synced"

    def test_group_report_to_dict(self):
        report = GroupStatusReport(
            group_id=3, status=SyncStatus.UNSYNCED, members={1: SyncStatus.CONNECT}
        )
        assert report.to_dict() == {
            "group_id": 3,
            "status": "unsynced",
            "members": {"1": "connect"},
        }


@pytest.mark.asyncio
class TestCheckStatus:
    """Tests for status evaluation and caching."""

    async def test_synced(self, dispatcher):
        report = await dispatcher.check_status(1)
        assert report.status == SyncStatus.SYNCED
        assert dispatcher.bus.latest(1).status == SyncStatus.SYNCED

    async def test_unsynced_with_reasons(self, dispatcher, account):
        account.fetch_remote_state.return_value = [make_remote("https://a")]

        report = await dispatcher.check_status(1)

        assert report.status == SyncStatus.UNSYNCED
        assert report.verdict.reasons == ["missing: https://b"]

    async def test_not_linked_reports_connect(self, dispatcher, db, account):
        db.get_account_ref.return_value = None

        report = await dispatcher.check_status(1)

        assert report.status == SyncStatus.CONNECT
        account.fetch_remote_state.assert_not_awaited()

    async def test_empty_auth_key_reports_connect(self, dispatcher, db):
        db.get_account_ref.return_value = AccountRef(user_id=1, auth_key="")
        report = await dispatcher.check_status(1)
        assert report.status == SyncStatus.CONNECT

    async def test_account_rejects_key(self, dispatcher, account):
        account.fetch_remote_state.side_effect = AccountNotLinked(1, "expired")
        report = await dispatcher.check_status(1)
        assert report.status == SyncStatus.CONNECT
        assert report.message == "expired"

    async def test_transport_error_raises(self, dispatcher, account):
        account.fetch_remote_state.side_effect = TransportError("down")
        with pytest.raises(TransportError):
            await dispatcher.check_status(1)

    async def test_remote_state_is_cached(self, dispatcher, account, clock):
        await dispatcher.check_status(1)
        await dispatcher.check_status(1)
        assert account.fetch_remote_state.await_count == 1

        await dispatcher.check_status(1, force=True)
        assert account.fetch_remote_state.await_count == 2

        clock.advance(61)
        await dispatcher.check_status(1)
        assert account.fetch_remote_state.await_count == 3

    async def test_unchanged_status_not_republished(self, dispatcher):
        await dispatcher.check_status(1)
        first = dispatcher.bus.latest(1).sequence

        await dispatcher.check_status(1, force=True)

        assert dispatcher.bus.latest(1).sequence == first

    async def test_changed_reasons_republished(self, dispatcher, account):
        account.fetch_remote_state.return_value = [make_remote("https://a")]
        await dispatcher.check_status(1)
        first = dispatcher.bus.latest(1).sequence

        account.fetch_remote_state.return_value = [make_remote("https://b")]
        await dispatcher.check_status(1, force=True)

        assert dispatcher.bus.latest(1).sequence > first

    async def test_protected_remote_addon_not_extra(self, dispatcher, account):
        account.fetch_remote_state.return_value = [
            make_remote(CINEMETA_URL),
            make_remote("https://a"),
            make_remote("https://x"),
            make_remote("https://b"),
        ]
        await dispatcher.protections.set(1, ["https://x"])

        report = await dispatcher.check_status(1)

        assert report.status == SyncStatus.SYNCED

    async def test_exclusions_applied(self, dispatcher, account):
        account.fetch_remote_state.return_value = [make_remote("https://a")]
        await dispatcher.exclusions.set(1, ["https://b"])

        report = await dispatcher.check_status(1)

        assert report.status == SyncStatus.SYNCED


@pytest.mark.asyncio
class TestGetStatus:
    """Tests for the cached status read."""

    async def test_unknown_user_is_checking(self, dispatcher):
        report = dispatcher.get_status(99)
        assert report.status == SyncStatus.CHECKING
        assert report.verdict is None

    async def test_returns_cached(self, dispatcher, clock):
        await dispatcher.check_status(1)
        clock.advance(10)

        report = dispatcher.get_status(1)

        assert report.status == SyncStatus.SYNCED
        assert report.age_seconds == 10

    async def test_old_verdict_reported_stale(self, dispatcher, clock):
        await dispatcher.check_status(1)
        clock.advance(301)
        assert dispatcher.get_status(1).status == SyncStatus.STALE

    async def test_invalidate_status(self, dispatcher):
        await dispatcher.check_status(1)

        await dispatcher.invalidate_status(1)

        assert dispatcher.get_status(1).status == SyncStatus.CHECKING
        latest = dispatcher.bus.latest(1)
        assert latest.event_type == EventType.INVALIDATED
        assert latest.status == SyncStatus.CHECKING


@pytest.mark.asyncio
class TestOverrides:
    """Tests for manual status overrides."""

    async def test_override_wins_within_grace(self, dispatcher, account, clock):
        await dispatcher.force_status(1, SyncStatus.UNSYNCED, message="manual")

        report = await dispatcher.check_status(1, force=True)

        assert report.status == SyncStatus.UNSYNCED
        assert report.message == "manual"
        account.fetch_remote_state.assert_not_awaited()

    async def test_override_expires(self, dispatcher, clock):
        await dispatcher.force_status(1, SyncStatus.UNSYNCED)
        clock.advance(1.5)

        report = await dispatcher.check_status(1)

        assert report.status == SyncStatus.SYNCED

    async def test_force_always_publishes(self, dispatcher):
        await dispatcher.check_status(1)
        first = dispatcher.bus.latest(1).sequence

        await dispatcher.force_status(1, SyncStatus.SYNCED)

        assert dispatcher.bus.latest(1).sequence == first + 1

    async def test_mark_stale_respects_override(self, dispatcher):
        await dispatcher.force_status(1, SyncStatus.SYNCED)
        await dispatcher.mark_stale(1, message="down")
        assert dispatcher.get_status(1).status == SyncStatus.SYNCED

    async def test_mark_stale_keeps_verdict(self, dispatcher, clock):
        await dispatcher.check_status(1)
        clock.advance(5)

        await dispatcher.mark_stale(1, message="down")

        report = dispatcher.get_status(1)
        assert report.status == SyncStatus.STALE
        assert report.message == "down"
        assert report.verdict is not None


@pytest.mark.asyncio
class TestRequestSync:
    """Tests for convergence."""

    async def test_installs_desired(self, dispatcher, account):
        account.fetch_remote_state.return_value = [make_remote("https://x")]

        verdict = await dispatcher.request_sync(1)

        assert verdict.is_synced
        ref, addons = account.install_or_reorder.await_args.args
        assert ref.auth_key == "key"
        assert [key_of(a) for a in addons] == ["https://a", "https://b"]
        assert dispatcher.get_status(1).status == SyncStatus.SYNCED

    async def test_protected_addons_keep_positions(self, dispatcher, account):
        account.fetch_remote_state.return_value = [
            make_remote(CINEMETA_URL),
            make_remote("https://x"),
            make_remote("https://p"),
        ]
        await dispatcher.protections.set(1, ["https://p"])

        await dispatcher.request_sync(1)

        _, addons = account.install_or_reorder.await_args.args
        assert [key_of(a) for a in addons] == [
            CINEMETA_URL,
            "https://a",
            "https://p",
            "https://b",
        ]

    async def test_unsafe_mode_drops_builtin(self, db, account, clock):
        dispatcher = build_dispatcher(
            db, account, clock, safety_mode=SafetyMode.UNSAFE
        )
        account.fetch_remote_state.return_value = [make_remote(CINEMETA_URL)]

        await dispatcher.request_sync(1)

        _, addons = account.install_or_reorder.await_args.args
        assert [key_of(a) for a in addons] == ["https://a", "https://b"]

    async def test_explicit_exclusion_set(self, dispatcher, account):
        await dispatcher.request_sync(1, exclusion_set=["https://a"])
        _, addons = account.install_or_reorder.await_args.args
        assert [key_of(a) for a in addons] == ["https://b"]

    async def test_synced_status_published(self, dispatcher):
        sub_id, sub = await dispatcher.bus.subscribe(user_id=1)

        await dispatcher.request_sync(1)

        first = await asyncio.wait_for(sub.__anext__(), timeout=1)
        second = await asyncio.wait_for(sub.__anext__(), timeout=1)
        assert first.status == SyncStatus.SYNCING
        assert second.status == SyncStatus.SYNCED
        await dispatcher.bus.unsubscribe(sub_id)

    async def test_remote_cache_dropped_after_sync(self, dispatcher, account, clock):
        await dispatcher.request_sync(1)
        fetches = account.fetch_remote_state.await_count
        clock.advance(2)

        await dispatcher.check_status(1)

        assert account.fetch_remote_state.await_count == fetches + 1

    async def test_failure_restores_previous_status(self, dispatcher, account):
        await dispatcher.check_status(1)
        account.install_or_reorder.side_effect = TransportError("rejected")

        with pytest.raises(TransportError):
            await dispatcher.request_sync(1)

        assert dispatcher.get_status(1).status == SyncStatus.SYNCED
        latest = dispatcher.bus.latest(1)
        assert latest.status == SyncStatus.UNSYNCED
        assert latest.message == "rejected"
        assert not dispatcher.is_pending(1)

    async def test_failure_without_previous_status(self, dispatcher, account):
        account.install_or_reorder.side_effect = TransportError("rejected")

        with pytest.raises(TransportError):
            await dispatcher.request_sync(1)

        assert dispatcher.get_status(1).status == SyncStatus.CHECKING

    async def test_not_linked(self, dispatcher, db, account):
        db.get_account_ref.return_value = None
        with pytest.raises(AccountNotLinked):
            await dispatcher.request_sync(1)
        account.install_or_reorder.assert_not_awaited()

    async def test_not_linked_publishes_connect(self, dispatcher, db):
        db.get_account_ref.return_value = None

        with pytest.raises(AccountNotLinked):
            await dispatcher.request_sync(1)

        latest = dispatcher.bus.latest(1)
        assert latest.status == SyncStatus.CONNECT
        assert latest.message == "User not connected to account"

    async def test_grace_window_starts_after_slow_install(
        self, dispatcher, account, clock
    ):
        account.fetch_remote_state.return_value = [make_remote("https://x")]

        async def slow_install(ref, addons):
            clock.advance(2)

        account.install_or_reorder.side_effect = slow_install

        await dispatcher.request_sync(1)
        report = await dispatcher.check_status(1)

        assert report.status == SyncStatus.SYNCED
        assert account.fetch_remote_state.await_count == 1

    async def test_status_reads_syncing_during_install(self, dispatcher, account):
        await dispatcher.check_status(1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_install(ref, addons):
            started.set()
            await release.wait()

        account.install_or_reorder.side_effect = slow_install

        task = asyncio.create_task(dispatcher.request_sync(1))
        await asyncio.wait_for(started.wait(), timeout=1)

        assert dispatcher.get_status(1).status == SyncStatus.SYNCING
        report = await dispatcher.check_status(1)
        assert report.status == SyncStatus.SYNCING
        assert report.verdict is not None

        release.set()
        await asyncio.wait_for(task, timeout=1)
        assert dispatcher.get_status(1).status == SyncStatus.SYNCED

    async def test_concurrent_request_is_busy(self, dispatcher, account):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_install(ref, addons):
            started.set()
            await release.wait()

        account.install_or_reorder.side_effect = slow_install

        task = asyncio.create_task(dispatcher.request_sync(1))
        await asyncio.wait_for(started.wait(), timeout=1)
        assert dispatcher.is_pending(1)

        with pytest.raises(Busy):
            await dispatcher.request_sync(1)
        with pytest.raises(Busy):
            await dispatcher.toggle_exclusion(1, "https://a")

        release.set()
        await asyncio.wait_for(task, timeout=1)
        assert not dispatcher.is_pending(1)

    async def test_other_users_proceed(self, dispatcher, db, account):
        release = asyncio.Event()
        started = asyncio.Event()

        async def install(ref, addons):
            if ref.user_id == 1:
                started.set()
                await release.wait()

        async def account_ref(user_id):
            return AccountRef(user_id=user_id, auth_key="key")

        db.get_account_ref.side_effect = account_ref
        account.install_or_reorder.side_effect = install

        task = asyncio.create_task(dispatcher.request_sync(1))
        await asyncio.wait_for(started.wait(), timeout=1)

        verdict = await dispatcher.request_sync(2)
        assert verdict.is_synced

        release.set()
        await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
class TestRemoveAddon:
    """Tests for remote addon removal."""

    async def test_remove(self, dispatcher, account):
        account.fetch_remote_state.return_value = [
            make_remote("https://a"),
            make_remote("https://X"),
        ]

        await dispatcher.remove_addon(1, "https://x")

        ref, key = account.remove_addon.await_args.args
        assert key == "https://x"

    async def test_unknown_addon(self, dispatcher, account):
        with pytest.raises(KeyError):
            await dispatcher.remove_addon(1, "https://nope")
        account.remove_addon.assert_not_awaited()

    async def test_builtin_blocked(self, dispatcher, account):
        account.fetch_remote_state.return_value = [make_remote(CINEMETA_URL)]

        with pytest.raises(PolicyViolation):
            await dispatcher.remove_addon(1, CINEMETA_URL)

        account.remove_addon.assert_not_awaited()
        assert not dispatcher.is_pending(1)

    async def test_user_protected_blocked(self, dispatcher, account):
        await dispatcher.protections.set(1, ["https://a"])
        with pytest.raises(PolicyViolation):
            await dispatcher.remove_addon(1, "https://a")

    async def test_unsafe_mode_allows(self, db, account, clock):
        dispatcher = build_dispatcher(
            db, account, clock, safety_mode=SafetyMode.UNSAFE
        )
        account.fetch_remote_state.return_value = [make_remote(CINEMETA_URL)]

        await dispatcher.remove_addon(1, CINEMETA_URL)

        account.remove_addon.assert_awaited_once()

    async def test_refresh_failure_marks_stale(self, dispatcher, account):
        account.fetch_remote_state.side_effect = [
            [make_remote("https://a"), make_remote("https://x")],
            TransportError("down"),
        ]

        await dispatcher.remove_addon(1, "https://x")

        report = dispatcher.get_status(1)
        assert report.status == SyncStatus.STALE
        assert report.message == "down"


@pytest.mark.asyncio
class TestAddonSets:
    """Tests for exclusion and protection set changes."""

    async def test_toggle_exclusion(self, dispatcher):
        assert await dispatcher.toggle_exclusion(1, " HTTPS://B ") == frozenset(
            {"https://b"}
        )
        # b is now an extra on the account
        assert dispatcher.get_status(1).status == SyncStatus.UNSYNCED

        assert await dispatcher.toggle_exclusion(1, "https://b") == frozenset()
        assert dispatcher.get_status(1).status == SyncStatus.SYNCED

    async def test_replace_exclusions(self, dispatcher):
        stored = await dispatcher.replace_exclusions(1, ["https://a", "https://b"])
        assert stored == frozenset({"https://a", "https://b"})
        assert await dispatcher.exclusions.get(1) == stored

    async def test_set_change_publishes_invalidation(self, dispatcher):
        sub_id, sub = await dispatcher.bus.subscribe(user_id=1)

        await dispatcher.replace_exclusions(1, ["https://b"])

        first = await asyncio.wait_for(sub.__anext__(), timeout=1)
        assert first.event_type == EventType.INVALIDATED
        await dispatcher.bus.unsubscribe(sub_id)

    async def test_toggle_protection(self, dispatcher):
        assert await dispatcher.toggle_protection(1, "https://x") == frozenset(
            {"https://x"}
        )
        assert await dispatcher.toggle_protection(1, "https://x") == frozenset()

    async def test_unprotect_builtin_blocked(self, dispatcher):
        await dispatcher.protections.set(1, [CINEMETA_URL])

        with pytest.raises(PolicyViolation):
            await dispatcher.toggle_protection(1, CINEMETA_URL)
        with pytest.raises(PolicyViolation):
            await dispatcher.replace_protections(1, [])

        assert await dispatcher.protections.get(1) == frozenset({CINEMETA_URL})

    async def test_replace_protections(self, dispatcher):
        await dispatcher.protections.set(1, ["https://x"])
        stored = await dispatcher.replace_protections(1, ["https://y"])
        assert stored == frozenset({"https://y"})

    async def test_unprotect_builtin_allowed_in_unsafe_mode(self, db, account, clock):
        dispatcher = build_dispatcher(
            db, account, clock, safety_mode=SafetyMode.UNSAFE
        )
        await dispatcher.protections.set(1, [CINEMETA_URL])

        assert await dispatcher.toggle_protection(1, CINEMETA_URL) == frozenset()


@pytest.mark.asyncio
class TestOrdering:
    """Tests for remote addon ordering."""

    @pytest.fixture(autouse=True)
    def three_addons(self, account):
        account.fetch_remote_state.return_value = [
            make_remote("https://a"),
            make_remote("https://b"),
            make_remote("https://c"),
        ]

    async def test_preview(self, dispatcher, account):
        order = await dispatcher.preview_order(1, "https://c", 0)

        assert order == ["https://c", "https://a", "https://b"]
        account.install_or_reorder.assert_not_awaited()

    async def test_preview_unknown_key(self, dispatcher):
        with pytest.raises(KeyError):
            await dispatcher.preview_order(1, "https://z", 0)

    async def test_reorder(self, dispatcher, account):
        order = await dispatcher.reorder(1, ["https://c", "https://b"])

        assert order == ["https://c", "https://b", "https://a"]
        _, addons = account.install_or_reorder.await_args.args
        assert [key_of(a) for a in addons] == order

    async def test_reorder_with_duplicate_installs(self, dispatcher, account):
        account.fetch_remote_state.return_value = [
            make_remote("https://a"),
            make_remote("https://b"),
            make_remote("https://a"),
        ]

        order = await dispatcher.reorder(1, ["https://b"])

        assert order == ["https://b", "https://a"]
        _, addons = account.install_or_reorder.await_args.args
        assert [key_of(a) for a in addons] == ["https://b", "https://a", "https://a"]

    async def test_reorder_unknown_key(self, dispatcher, account):
        with pytest.raises(ValueError):
            await dispatcher.reorder(1, ["https://z"])
        account.install_or_reorder.assert_not_awaited()

    async def test_reorder_persist_failure(self, dispatcher, account):
        account.install_or_reorder.side_effect = TransportError("down")
        with pytest.raises(TransportError):
            await dispatcher.reorder(1, ["https://c"])
        assert not dispatcher.is_pending(1)


@pytest.mark.asyncio
class TestGroupStatus:
    """Tests for group aggregation."""

    async def test_all_synced(self, dispatcher, db):
        report = await dispatcher.check_group_status(4)
        assert report.status == SyncStatus.SYNCED
        assert report.members == {1: SyncStatus.SYNCED}
        db.get_group_user_ids.assert_awaited_once_with(4)

    async def test_member_not_linked(self, dispatcher, db):
        async def account_ref(user_id):
            if user_id == 2:
                return None
            return AccountRef(user_id=user_id, auth_key="key")

        db.get_group_user_ids.return_value = [1, 2]
        db.get_account_ref.side_effect = account_ref

        report = await dispatcher.check_group_status(4)

        assert report.status == SyncStatus.UNSYNCED
        assert report.members[2] == SyncStatus.CONNECT

    async def test_transport_error_member_stale(self, dispatcher, account):
        account.fetch_remote_state.side_effect = TransportError("down")
        report = await dispatcher.check_group_status(4)
        assert report.members[1] == SyncStatus.STALE
        assert report.status == SyncStatus.UNSYNCED

    async def test_empty_group_stale(self, dispatcher, db):
        db.get_group_user_ids.return_value = []
        report = await dispatcher.check_group_status(4)
        assert report.status == SyncStatus.STALE


@pytest.mark.asyncio
class TestRefresh:
    """Tests for the periodic refresh."""

    async def test_refresh_all(self, dispatcher, account):
        await dispatcher.refresh_all()
        assert dispatcher.get_status(1).status == SyncStatus.SYNCED

    async def test_refresh_marks_stale_on_transport_error(self, dispatcher, account):
        account.fetch_remote_state.side_effect = TransportError("down")

        await dispatcher.refresh_users([1])

        report = dispatcher.get_status(1)
        assert report.status == SyncStatus.STALE
        assert report.message == "down"

    async def test_refresh_survives_unexpected_error(self, dispatcher, account):
        account.fetch_remote_state.side_effect = RuntimeError("boom")
        await dispatcher.refresh_users([1])
        assert dispatcher.get_status(1).status == SyncStatus.CHECKING

    async def test_refresh_skips_pending_user(self, dispatcher, account):
        dispatcher._pending.add(1)
        await dispatcher.refresh_users([1])
        account.fetch_remote_state.assert_not_awaited()

    async def test_start_and_stop(self, dispatcher, db):
        task = asyncio.create_task(dispatcher.start())
        await asyncio.sleep(0.01)
        assert dispatcher.running

        await dispatcher.stop()
        await asyncio.wait_for(task, timeout=1)

        assert not dispatcher.running
        db.list_linked_user_ids.assert_awaited()
