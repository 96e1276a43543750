"""
Forward-only SQL migrations for the addonsync schema.

Migrations live in ``migrations/`` as ``NNN_description.sql`` and are applied
in version order, each in its own transaction. An advisory lock keeps two
processes from migrating the same database at once.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary application-wide key for pg_advisory_lock
MIGRATION_LOCK_KEY = 0x61646473


@dataclass(frozen=True)
class Migration:
    """A migration file on disk."""

    version: str
    filename: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Find migration files, sorted by version.

    Args:
        directory: Where to look; defaults to MIGRATIONS_DIR.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
        ValueError: If two files share a version number.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    by_version = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in by_version:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{by_version[version].filename} and {entry.name}"
            )
        by_version[version] = Migration(version, entry.name, entry)

    return [by_version[v] for v in sorted(by_version)]


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    """Get the set of already-applied migration versions."""
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Apply one migration and record it, atomically."""
    async with conn.transaction():
        await conn.execute(migration.read())
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            migration.version,
            migration.filename,
        )
    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in order.

    Args:
        pool: A connected asyncpg pool.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails. That migration is rolled
            back; earlier ones stay applied.
    """
    migrations = discover_migrations()

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_versions(conn)
            pending = [m for m in migrations if m.version not in applied]

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
