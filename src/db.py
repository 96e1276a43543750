"""
Database Manager - PostgreSQL schema and operations.

Stores groups and their ordered addon lists, users with their linked
account keys, and per-user exclusion and protection sets.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from canonical import manifest_hash
from migrate import run_migrations
from models import AccountRef, Addon, AddonRef

logger = logging.getLogger(__name__)

ADDON_SET_KINDS = ("excluded", "protected")


class DatabaseManager:
    """Manages PostgreSQL database operations for addon groups and users."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Group Methods ====================

    async def create_group(self, name: str, description: Optional[str] = None) -> int:
        """
        Create a new group.

        Args:
            name: Unique group name
            description: Optional description

        Returns:
            The new group ID.
        """
        async with self.pool.acquire() as conn:
            group_id = await conn.fetchval(
                """
                INSERT INTO groups (name, description)
                VALUES ($1, $2)
                RETURNING id
                """,
                name,
                description,
            )
            logger.info(f"Created group {name} with ID {group_id}")
            return group_id

    async def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        """Get a group by ID, including its member count."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT g.*,
                       (SELECT COUNT(*) FROM users u WHERE u.group_id = g.id)
                           AS member_count
                FROM groups g
                WHERE g.id = $1
                """,
                group_id,
            )
            return dict(row) if row else None

    async def list_groups(self, limit: int = 100) -> List[Dict[str, Any]]:
        """List groups ordered by name."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT g.*,
                       (SELECT COUNT(*) FROM users u WHERE u.group_id = g.id)
                           AS member_count
                FROM groups g
                ORDER BY g.name
                LIMIT $1
                """,
                limit,
            )
            return [dict(row) for row in rows]

    async def delete_group(self, group_id: int) -> bool:
        """
        Delete a group and its addon list.

        Members are kept and detached from the group.

        Returns:
            False if the group does not exist.
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM groups WHERE id = $1", group_id)
            deleted = result.split()[-1] != "0"
            if deleted:
                logger.info(f"Deleted group {group_id}")
            return deleted

    async def replace_group_addons(self, group_id: int, addons: List[Addon]) -> int:
        """
        Replace a group's ordered addon list in a single transaction.

        Args:
            group_id: The group to update
            addons: The full new addon list, in install order

        Returns:
            Number of addons stored.
        """
        records = [
            (
                group_id,
                position,
                addon.ref.manifest_url,
                addon.ref.transport_url,
                addon.ref.url,
                addon.ref.id,
                addon.name,
                addon.version,
                json.dumps(addon.manifest) if addon.manifest is not None else None,
                manifest_hash(addon.manifest) if addon.manifest is not None else None,
                addon.is_enabled,
            )
            for position, addon in enumerate(addons)
        ]

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM group_addons WHERE group_id = $1", group_id
                )
                if records:
                    await conn.executemany(
                        """
                        INSERT INTO group_addons (
                            group_id, position, manifest_url, transport_url, url,
                            addon_id, name, version, manifest, manifest_hash,
                            is_enabled
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        """,
                        records,
                    )
                await conn.execute(
                    "UPDATE groups SET updated_at = NOW() WHERE id = $1", group_id
                )

        logger.info(f"Stored {len(records)} addons for group {group_id}")
        return len(records)

    async def get_group_addons(self, group_id: int) -> List[Addon]:
        """Get a group's addons in install order."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM group_addons
                WHERE group_id = $1
                ORDER BY position
                """,
                group_id,
            )
            return [self._row_to_addon(row) for row in rows]

    async def get_group_user_ids(self, group_id: int) -> List[int]:
        """Get the IDs of a group's members."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id FROM users WHERE group_id = $1 ORDER BY id", group_id
            )
            return [row["id"] for row in rows]

    # ==================== User Methods ====================

    async def create_user(
        self,
        name: str,
        group_id: Optional[int] = None,
        auth_key: Optional[str] = None,
    ) -> int:
        """
        Create a new user.

        Args:
            name: Unique user name
            group_id: Optional group membership
            auth_key: Optional remote account auth key
        """
        async with self.pool.acquire() as conn:
            user_id = await conn.fetchval(
                """
                INSERT INTO users (name, group_id, auth_key)
                VALUES ($1, $2, $3)
                RETURNING id
                """,
                name,
                group_id,
                auth_key,
            )
            logger.info(f"Created user {name} with ID {user_id}")
            return user_id

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Get a user by ID. The auth key is replaced by a ``linked`` flag."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
            if not row:
                return None
            return self._parse_user_row(row)

    async def list_users(
        self, group_id: Optional[int] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """List users with an optional group filter."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM users WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if group_id is not None:
                param_count += 1
                query += f" AND group_id = ${param_count}"
                params.append(group_id)

            param_count += 1
            query += f" ORDER BY name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_user_row(row) for row in rows]

    async def update_user(
        self,
        user_id: int,
        name: Optional[str] = None,
        group_id: Optional[int] = None,
        auth_key: Optional[str] = None,
    ) -> None:
        """Update a user. Fields left as None are unchanged."""
        async with self.pool.acquire() as conn:
            updates = []
            params: List[Any] = []
            param_count = 0

            if name is not None:
                param_count += 1
                updates.append(f"name = ${param_count}")
                params.append(name)

            if group_id is not None:
                param_count += 1
                updates.append(f"group_id = ${param_count}")
                params.append(group_id)

            if auth_key is not None:
                param_count += 1
                updates.append(f"auth_key = ${param_count}")
                params.append(auth_key or None)

            if not updates:
                return

            updates.append("updated_at = NOW()")
            param_count += 1
            params.append(user_id)

            query = f"UPDATE users SET {', '.join(updates)} WHERE id = ${param_count}"
            await conn.execute(query, *params)
            logger.info(f"Updated user {user_id}")

    async def delete_user(self, user_id: int) -> bool:
        """Delete a user and their addon sets."""
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM users WHERE id = $1", user_id)
            deleted = result.split()[-1] != "0"
            if deleted:
                logger.info(f"Deleted user {user_id}")
            return deleted

    async def get_account_ref(self, user_id: int) -> Optional[AccountRef]:
        """Get the remote account handle for a user, or None if not linked."""
        async with self.pool.acquire() as conn:
            auth_key = await conn.fetchval(
                "SELECT auth_key FROM users WHERE id = $1", user_id
            )
            if not auth_key:
                return None
            return AccountRef(user_id=user_id, auth_key=auth_key)

    async def list_linked_user_ids(self) -> List[int]:
        """Get the IDs of users with a linked remote account."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id FROM users
                WHERE auth_key IS NOT NULL AND auth_key <> ''
                ORDER BY id
                """
            )
            return [row["id"] for row in rows]

    async def get_user_group_addons(self, user_id: int) -> List[Addon]:
        """Get the addons of the user's group, empty if the user has no group."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT ga.* FROM group_addons ga
                JOIN users u ON u.group_id = ga.group_id
                WHERE u.id = $1
                ORDER BY ga.position
                """,
                user_id,
            )
            return [self._row_to_addon(row) for row in rows]

    # ==================== Addon Set Methods ====================

    async def get_addon_set(self, user_id: int, kind: str) -> List[str]:
        """
        Get a user's exclusion or protection set.

        Args:
            user_id: The user
            kind: 'excluded' or 'protected'

        Returns:
            The stored URL keys; empty if never written.
        """
        self._check_kind(kind)
        async with self.pool.acquire() as conn:
            keys = await conn.fetchval(
                "SELECT keys FROM user_addon_sets WHERE user_id = $1 AND kind = $2",
                user_id,
                kind,
            )
            return json.loads(keys) if keys else []

    async def set_addon_set(self, user_id: int, kind: str, keys: Iterable[str]) -> None:
        """Replace a user's exclusion or protection set."""
        self._check_kind(kind)
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_addon_sets (user_id, kind, keys)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, kind)
                DO UPDATE SET keys = EXCLUDED.keys, updated_at = NOW()
                """,
                user_id,
                kind,
                json.dumps(list(keys)),
            )

    # ==================== Helpers ====================

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in ADDON_SET_KINDS:
            raise ValueError(f"Unknown addon set kind: {kind}")

    def _parse_user_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a users row, never exposing the auth key."""
        result = dict(row)
        result["linked"] = bool(result.pop("auth_key", None))
        return result

    def _row_to_addon(self, row: asyncpg.Record) -> Addon:
        """Build an Addon from a group_addons row."""
        manifest = json.loads(row["manifest"]) if row["manifest"] else None
        return Addon(
            ref=AddonRef(
                manifest_url=row["manifest_url"] or "",
                transport_url=row["transport_url"] or "",
                url=row["url"] or "",
                id=row["addon_id"],
            ),
            manifest=manifest,
            name=row["name"],
            version=row["version"],
            is_enabled=row["is_enabled"],
        )
