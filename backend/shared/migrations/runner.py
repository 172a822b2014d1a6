"""Migration runner for the watch-stats schema."""

from __future__ import annotations

import logging
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

# Default directory for migration SQL files
VERSIONS_DIR = Path(__file__).resolve().parent / "versions"

# Arbitrary constant shared by every worker instance
_ADVISORY_LOCK_KEY = 7_311_042


class MigrationRunner:
    """Apply and track schema migrations.

    Migrations are plain SQL files in ``versions/`` named ``NNN_description.sql``.
    Applied versions are recorded in ``schema_migrations``.  Several worker
    instances may start at once, so the pending set is computed and applied
    while holding a transaction-scoped advisory lock: the second instance
    waits, then finds nothing left to do.
    """

    TRACKING_TABLE = "schema_migrations"

    def __init__(self, pool: asyncpg.Pool, migrations_dir: Path | None = None) -> None:
        self.pool = pool
        self.migrations_dir = migrations_dir or VERSIONS_DIR

    def discover(self) -> list[Path]:
        """Migration files sorted by filename (the NNN_ prefix orders them)."""
        return sorted(self.migrations_dir.glob("*.sql"))

    async def pending(self) -> list[str]:
        """Versions on disk that are not yet recorded as applied."""
        async with self.pool.acquire() as conn:
            exists = await conn.fetchval("SELECT to_regclass($1)", self.TRACKING_TABLE)
            applied: set[str] = set()
            if exists:
                rows = await conn.fetch(
                    f"SELECT version FROM {self.TRACKING_TABLE}"  # noqa: S608
                )
                applied = {row["version"] for row in rows}
        return [p.stem for p in self.discover() if p.stem not in applied]

    async def run_pending(self) -> list[str]:
        """Apply every migration not yet recorded.  Returns the applied versions."""
        sql_files = self.discover()
        if not sql_files:
            logger.info("No migration files found in %s", self.migrations_dir)
            return []

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", _ADVISORY_LOCK_KEY)
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.TRACKING_TABLE} (
                        version    TEXT PRIMARY KEY,
                        name       TEXT NOT NULL,
                        applied_at TIMESTAMPTZ DEFAULT NOW()
                    )
                    """
                )
                rows = await conn.fetch(
                    f"SELECT version FROM {self.TRACKING_TABLE}"  # noqa: S608
                )
                applied = {row["version"] for row in rows}

                newly_applied: list[str] = []
                for sql_path in sql_files:
                    version = sql_path.stem
                    if version in applied:
                        logger.debug("Migration %s already applied, skipping", version)
                        continue
                    logger.info("Applying migration: %s", version)
                    await conn.execute(sql_path.read_text(encoding="utf-8"))
                    await conn.execute(
                        f"INSERT INTO {self.TRACKING_TABLE} (version, name) VALUES ($1, $2)",
                        version,
                        sql_path.name,
                    )
                    newly_applied.append(version)

        if newly_applied:
            logger.info(
                "Applied %d migration(s): %s", len(newly_applied), ", ".join(newly_applied)
            )
        else:
            logger.info("Database is up to date, no pending migrations")
        return newly_applied
