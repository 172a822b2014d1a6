"""Recalculate one viewer's watch time for a day from raw chat messages.

Reconciliation only: this OVERWRITES the day's watch seconds with the value
inferred from message timestamps, discarding heartbeat and chat-increment
contributions for that row.  Do not run it against today's data while the
worker is crediting the same viewer.

Usage:
    python recalculate_watch_time.py --viewer ID --channel ID --date 2026-01-31
    python recalculate_watch_time.py --viewer ID --channel ID --date 2026-01-31 --aggregate
    python recalculate_watch_time.py ... --aggregate --allow-decrease

Options:
    --aggregate        Re-aggregate the pair's lifetime stats afterwards
    --allow-decrease   Let the re-aggregation lower cumulative totals
    --env-file PATH    Load environment variables from PATH first
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure backend/ is on sys.path so shared.* and watchstats.* are importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

from shared.database import DatabaseManager, PoolConfig
from shared.dates import coerce_date
from shared.repositories import (
    DailyStatsRepository,
    HeartbeatDedupRepository,
    LifetimeStatsRepository,
    MessageRepository,
)
from watchstats.core.config import get_settings
from watchstats.core.logging import setup_logging
from watchstats.services.daily_stats import DailyStatWriter
from watchstats.services.lifetime_stats import LifetimeStatsAggregator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recalculate a day's watch time from chat messages")
    parser.add_argument("--viewer", required=True, help="Viewer ID")
    parser.add_argument("--channel", required=True, help="Channel ID")
    parser.add_argument("--date", required=True, type=coerce_date, help="UTC day, YYYY-MM-DD")
    parser.add_argument("--aggregate", action="store_true", help="Re-aggregate lifetime stats")
    parser.add_argument(
        "--allow-decrease",
        action="store_true",
        help="Allow the re-aggregation to lower cumulative totals",
    )
    parser.add_argument("--env-file", type=Path, help="Load environment from this file first")
    return parser


async def recalculate(args: argparse.Namespace) -> int:
    settings = get_settings()
    db = DatabaseManager(settings.database_url, PoolConfig.for_service("cli"))
    await db.connect()
    try:
        pool = db.pool
        lifetime = LifetimeStatsRepository(pool)
        writer = DailyStatWriter(
            pool,
            DailyStatsRepository(pool),
            MessageRepository(pool),
            lifetime,
            HeartbeatDedupRepository(pool),
        )

        result = await writer.recalculate_day(
            args.viewer, args.channel, args.date, allow_overwrite=True
        )
        if not result.applied:
            print(f"Nothing written for {args.date}: {result.reason}")
        else:
            print(
                f"✓ {args.date}: {result.message_count} message(s), "
                f"{result.session_count} session(s), {result.watch_seconds // 60} min"
            )

        if args.aggregate:
            stats = await LifetimeStatsAggregator(lifetime).aggregate(
                args.viewer, args.channel, allow_decrease=args.allow_decrease
            )
            print(
                f"✓ Lifetime: {stats.total_watch_time_minutes} min, "
                f"{stats.tracking_days} active day(s), "
                f"longest streak {stats.longest_streak_days}"
            )
        return 0
    finally:
        await db.disconnect()


def main() -> None:
    args = build_parser().parse_args()
    if args.env_file:
        load_dotenv(dotenv_path=args.env_file, encoding="utf-8", override=True)

    try:
        settings = get_settings()
    except Exception as e:
        print(f"[ERROR] Invalid configuration: {e}")
        sys.exit(1)
    setup_logging(settings.log_level, force_terminal=sys.stdout.isatty())
    logging.getLogger("shared.database").setLevel(logging.WARNING)

    try:
        sys.exit(asyncio.run(recalculate(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
