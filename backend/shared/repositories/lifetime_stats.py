"""Repository for viewer_channel_lifetime_stats and its input tables."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

import asyncpg

from shared.models.stats import (
    DailyStat,
    LifetimeStats,
    MessageDailyAgg,
    PercentileUpdate,
    RankingRow,
)
from shared.repositories.base import BaseRepository, affected_rows

logger = logging.getLogger(__name__)

_LIFETIME_COLUMNS = """
    viewer_id, channel_id, total_watch_time_minutes, total_sessions,
    avg_session_minutes, first_watched_at, last_watched_at, total_messages,
    total_chat_messages, total_subscriptions, total_cheers, total_bits,
    tracking_started_at, tracking_days, longest_streak_days,
    current_streak_days, active_days_last_30, active_days_last_90,
    most_active_month, most_active_month_count, watch_time_percentile,
    message_percentile, updated_at
"""

# Percentile columns are owned by the ranking updater and left untouched here.
# $21 selects guarded mode: cumulative columns keep the larger of old/new so a
# concurrent run that read the row before another committed cannot regress it.
_UPSERT_SQL = f"""
INSERT INTO viewer_channel_lifetime_stats AS l (
    viewer_id, channel_id, total_watch_time_minutes, total_sessions,
    avg_session_minutes, first_watched_at, last_watched_at, total_messages,
    total_chat_messages, total_subscriptions, total_cheers, total_bits,
    tracking_started_at, tracking_days, longest_streak_days,
    current_streak_days, active_days_last_30, active_days_last_90,
    most_active_month, most_active_month_count
) VALUES (
    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
    $11, $12, $13, $14, $15, $16, $17, $18, $19, $20
)
ON CONFLICT (viewer_id, channel_id) DO UPDATE SET
    total_watch_time_minutes = CASE WHEN $21 THEN GREATEST(l.total_watch_time_minutes, EXCLUDED.total_watch_time_minutes) ELSE EXCLUDED.total_watch_time_minutes END,
    total_sessions           = CASE WHEN $21 THEN GREATEST(l.total_sessions, EXCLUDED.total_sessions) ELSE EXCLUDED.total_sessions END,
    total_messages           = CASE WHEN $21 THEN GREATEST(l.total_messages, EXCLUDED.total_messages) ELSE EXCLUDED.total_messages END,
    total_chat_messages      = CASE WHEN $21 THEN GREATEST(l.total_chat_messages, EXCLUDED.total_chat_messages) ELSE EXCLUDED.total_chat_messages END,
    total_subscriptions      = CASE WHEN $21 THEN GREATEST(l.total_subscriptions, EXCLUDED.total_subscriptions) ELSE EXCLUDED.total_subscriptions END,
    total_cheers             = CASE WHEN $21 THEN GREATEST(l.total_cheers, EXCLUDED.total_cheers) ELSE EXCLUDED.total_cheers END,
    total_bits               = CASE WHEN $21 THEN GREATEST(l.total_bits, EXCLUDED.total_bits) ELSE EXCLUDED.total_bits END,
    first_watched_at         = CASE WHEN $21 THEN LEAST(l.first_watched_at, EXCLUDED.first_watched_at) ELSE EXCLUDED.first_watched_at END,
    last_watched_at          = CASE WHEN $21 THEN GREATEST(l.last_watched_at, EXCLUDED.last_watched_at) ELSE EXCLUDED.last_watched_at END,
    avg_session_minutes      = EXCLUDED.avg_session_minutes,
    tracking_started_at      = EXCLUDED.tracking_started_at,
    tracking_days            = EXCLUDED.tracking_days,
    longest_streak_days      = EXCLUDED.longest_streak_days,
    current_streak_days      = EXCLUDED.current_streak_days,
    active_days_last_30      = EXCLUDED.active_days_last_30,
    active_days_last_90      = EXCLUDED.active_days_last_90,
    most_active_month        = EXCLUDED.most_active_month,
    most_active_month_count  = EXCLUDED.most_active_month_count,
    updated_at               = NOW()
RETURNING {_LIFETIME_COLUMNS}
"""


class LifetimeStatsRepository(BaseRepository):
    """Reads the aggregation inputs and writes the lifetime profile."""

    # ── Aggregation inputs ───────────────────────────────────────────

    async def fetch_daily_rows(self, viewer_id: str, channel_id: str) -> list[DailyStat]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT viewer_id, channel_id, date, watch_seconds, message_count,
                       emote_count, source, created_at, updated_at
                FROM viewer_channel_daily_stats
                WHERE viewer_id = $1 AND channel_id = $2
                ORDER BY date ASC
                """,
                viewer_id,
                channel_id,
            )
            return [DailyStat.from_row(r) for r in rows]

    async def fetch_message_rows(self, viewer_id: str, channel_id: str) -> list[MessageDailyAgg]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT viewer_id, channel_id, date, total_messages, chat_messages,
                       subscriptions, cheers, gift_subs, raids, total_bits, updated_at
                FROM viewer_channel_message_daily_aggs
                WHERE viewer_id = $1 AND channel_id = $2
                ORDER BY date ASC
                """,
                viewer_id,
                channel_id,
            )
            return [MessageDailyAgg.from_row(r) for r in rows]

    # ── Lifetime row ─────────────────────────────────────────────────

    async def get(self, viewer_id: str, channel_id: str) -> LifetimeStats | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_LIFETIME_COLUMNS} FROM viewer_channel_lifetime_stats "  # noqa: S608
                "WHERE viewer_id = $1 AND channel_id = $2",
                viewer_id,
                channel_id,
            )
            return LifetimeStats.from_row(row) if row else None

    async def save(self, stats: LifetimeStats, *, prevent_decrease: bool = True) -> LifetimeStats:
        """Upsert one lifetime row in a single transaction.

        In guarded mode the existing row is locked (``FOR UPDATE``) and merged
        through :meth:`LifetimeStats.guarded_against` before writing, and the
        upsert itself keeps ``GREATEST``/``LEAST`` for the first-insert race.
        Returns the row as persisted.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                to_write = stats
                if prevent_decrease:
                    row = await conn.fetchrow(
                        f"SELECT {_LIFETIME_COLUMNS} FROM viewer_channel_lifetime_stats "  # noqa: S608
                        "WHERE viewer_id = $1 AND channel_id = $2 FOR UPDATE",
                        stats.viewer_id,
                        stats.channel_id,
                    )
                    previous = LifetimeStats.from_row(row) if row else None
                    to_write = stats.guarded_against(previous)

                saved = await conn.fetchrow(
                    _UPSERT_SQL,
                    to_write.viewer_id,
                    to_write.channel_id,
                    to_write.total_watch_time_minutes,
                    to_write.total_sessions,
                    to_write.avg_session_minutes,
                    to_write.first_watched_at,
                    to_write.last_watched_at,
                    to_write.total_messages,
                    to_write.total_chat_messages,
                    to_write.total_subscriptions,
                    to_write.total_cheers,
                    to_write.total_bits,
                    to_write.tracking_started_at,
                    to_write.tracking_days,
                    to_write.longest_streak_days,
                    to_write.current_streak_days,
                    to_write.active_days_last_30,
                    to_write.active_days_last_90,
                    to_write.most_active_month,
                    to_write.most_active_month_count,
                    prevent_decrease,
                )
        return LifetimeStats.from_row(saved)

    async def touch_last_watched(
        self,
        touches: Sequence[tuple[str, str, datetime]],
        *,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """Advance ``last_watched_at`` for (viewer, channel, when) triples.

        Creates a minimal row for pairs never aggregated; ``last_watched_at``
        only ever moves forward.  Does not bump ``updated_at`` so a touch alone
        does not trigger a percentile recompute.
        """
        if not touches:
            return 0
        async with self.connection(conn) as c:
            status = await c.execute(
                """
                INSERT INTO viewer_channel_lifetime_stats AS l
                    (viewer_id, channel_id, first_watched_at, last_watched_at, tracking_started_at)
                SELECT t.viewer_id, t.channel_id, t.watched_at, t.watched_at, t.watched_at
                FROM UNNEST($1::text[], $2::text[], $3::timestamptz[])
                    AS t(viewer_id, channel_id, watched_at)
                ON CONFLICT (viewer_id, channel_id) DO UPDATE SET
                    last_watched_at  = GREATEST(l.last_watched_at, EXCLUDED.last_watched_at),
                    first_watched_at = COALESCE(l.first_watched_at, EXCLUDED.first_watched_at)
                """,
                [t[0] for t in touches],
                [t[1] for t in touches],
                [t[2] for t in touches],
            )
        return affected_rows(status)

    # ── Batch selection ──────────────────────────────────────────────

    async def find_changed_pairs(self, since: datetime) -> list[tuple[str, str]]:
        """Pairs whose daily or message rows changed at or after *since*."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT viewer_id, channel_id FROM viewer_channel_daily_stats
                WHERE updated_at >= $1
                UNION
                SELECT viewer_id, channel_id FROM viewer_channel_message_daily_aggs
                WHERE updated_at >= $1
                ORDER BY channel_id, viewer_id
                """,
                since,
            )
            return [(r["viewer_id"], r["channel_id"]) for r in rows]

    async def all_pairs(self) -> list[tuple[str, str]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT viewer_id, channel_id FROM viewer_channel_daily_stats
                UNION
                SELECT viewer_id, channel_id FROM viewer_channel_message_daily_aggs
                ORDER BY channel_id, viewer_id
                """
            )
            return [(r["viewer_id"], r["channel_id"]) for r in rows]

    # ── Percentile ranking ───────────────────────────────────────────

    async def fetch_ranking_rows(self, channel_id: str) -> list[RankingRow]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT viewer_id, total_watch_time_minutes, total_messages, updated_at
                FROM viewer_channel_lifetime_stats
                WHERE channel_id = $1
                """,
                channel_id,
            )
            return [RankingRow.from_row(r) for r in rows]

    async def has_changes_since(self, channel_id: str, since: datetime) -> bool:
        async with self.pool.acquire() as conn:
            return bool(
                await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM viewer_channel_lifetime_stats
                        WHERE channel_id = $1 AND updated_at >= $2
                    )
                    """,
                    channel_id,
                    since,
                )
            )

    async def write_percentiles(self, channel_id: str, updates: Sequence[PercentileUpdate]) -> None:
        """Write percentile columns only; ``updated_at`` is left alone."""
        if not updates:
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    UPDATE viewer_channel_lifetime_stats
                    SET watch_time_percentile = $3, message_percentile = $4
                    WHERE viewer_id = $1 AND channel_id = $2
                    """,
                    [
                        (u.viewer_id, channel_id, u.watch_time_percentile, u.message_percentile)
                        for u in updates
                    ],
                )
