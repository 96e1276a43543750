"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from models import AccountRef, Addon, AddonRef


def make_addon(url, addon_id=None, manifest=None, enabled=True, name=None):
    """Build an addon with a manifest URL and optional id/manifest."""
    if manifest is None and addon_id is not None:
        manifest = {"id": addon_id, "name": name or addon_id, "version": "1.0.0"}
    return Addon(
        ref=AddonRef(manifest_url=url, id=addon_id),
        manifest=manifest,
        name=name,
        is_enabled=enabled,
    )


def make_remote(url, addon_id=None, manifest=None):
    """Build a remote addon as returned by an account (transport URL only)."""
    if manifest is None and addon_id is not None:
        manifest = {"id": addon_id, "name": addon_id, "version": "1.0.0"}
    return Addon(ref=AddonRef(transport_url=url), manifest=manifest)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def account_ref():
    return AccountRef(user_id=1, auth_key="secret-key")


@pytest.fixture
def sample_manifest():
    """Sample addon manifest for testing."""
    return {
        "id": "org.example.torrentio",
        "name": "Torrentio",
        "version": "0.0.14",
        "resources": ["stream"],
        "types": ["movie", "series"],
        "catalogs": [],
    }


@pytest.fixture
def sample_group_row():
    """Sample group row data for testing."""
    return {
        "id": 1,
        "name": "family",
        "description": "Family accounts",
        "member_count": 2,
        "created_at": None,
        "updated_at": None,
    }
