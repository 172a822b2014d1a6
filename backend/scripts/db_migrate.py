"""Run database migrations using shared.migrations.runner.

Usage:
    python db_migrate.py          # Run all pending migrations
    python db_migrate.py --dry    # Show pending migrations without applying
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure backend/ is on sys.path so shared.* is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

from shared.database import DatabaseManager, PoolConfig
from shared.migrations.runner import MigrationRunner
from watchstats.core.config import get_settings

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Apply watch-stats schema migrations")
    parser.add_argument("--dry", action="store_true", help="List pending migrations only")
    parser.add_argument("--env-file", type=Path, help="Load environment from this file first")
    args = parser.parse_args()

    if args.env_file:
        load_dotenv(dotenv_path=args.env_file, encoding="utf-8", override=True)

    try:
        settings = get_settings()
    except Exception as e:
        print(f"ERROR: invalid configuration: {e}")
        sys.exit(1)

    db = DatabaseManager(settings.database_url, PoolConfig.for_service("cli"))
    await db.connect()
    try:
        runner = MigrationRunner(db.pool)

        if args.dry:
            pending = await runner.pending()
            print(f"Pending: {len(pending)}")
            for v in pending:
                print(f"  -> {v}")
            if not pending:
                print("Database is up to date.")
        else:
            newly_applied = await runner.run_pending()
            if not newly_applied:
                print("No pending migrations.")
            else:
                print(f"Applied {len(newly_applied)} migration(s).")
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
