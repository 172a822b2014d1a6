"""Repository for viewer_channel_daily_stats and the raw message table."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime

import asyncpg

from shared.dates import coerce_datetime
from shared.models.stats import SOURCE_CHAT, SOURCE_EXTENSION, DailyStatDelta
from shared.repositories.base import BaseRepository, affected_rows

logger = logging.getLogger(__name__)

# Additive upsert.  A 'chat' (inferred) increment never adds watch time to a
# row that extension heartbeats already own for that day.
_APPLY_DELTAS_SQL = """
INSERT INTO viewer_channel_daily_stats AS d
    (viewer_id, channel_id, date, watch_seconds, message_count, emote_count, source)
SELECT v.viewer_id, v.channel_id, v.date, v.watch_seconds, v.message_count, v.emote_count, $7::text
FROM UNNEST($1::text[], $2::text[], $3::date[], $4::int[], $5::int[], $6::int[])
    AS v(viewer_id, channel_id, date, watch_seconds, message_count, emote_count)
ON CONFLICT (viewer_id, channel_id, date) DO UPDATE SET
    watch_seconds = CASE
        WHEN d.source = 'extension' AND EXCLUDED.source <> 'extension'
            THEN d.watch_seconds
        ELSE d.watch_seconds + EXCLUDED.watch_seconds
    END,
    message_count = d.message_count + EXCLUDED.message_count,
    emote_count   = d.emote_count + EXCLUDED.emote_count,
    source        = CASE WHEN EXCLUDED.source = 'extension' THEN 'extension' ELSE d.source END,
    updated_at    = NOW()
"""


class DailyStatsRepository(BaseRepository):
    """SQL for the per-day counters.

    Routine writers only ever use :meth:`apply_deltas` (increment semantics).
    :meth:`overwrite_day` exists for the opt-in reconciliation path.
    """

    async def apply_deltas(
        self,
        deltas: Sequence[DailyStatDelta],
        *,
        source: str = SOURCE_CHAT,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """Add each delta to its row in one statement.  Returns rows touched.

        Deltas must already be coalesced per ``(viewer, channel, date)``; a
        key appearing twice in one INSERT ... ON CONFLICT is rejected by
        PostgreSQL.
        """
        if not deltas:
            return 0
        if source not in (SOURCE_CHAT, SOURCE_EXTENSION):
            raise ValueError(f"Unknown daily stat source: {source!r}")

        async with self.connection(conn) as c:
            status = await c.execute(
                _APPLY_DELTAS_SQL,
                [d.viewer_id for d in deltas],
                [d.channel_id for d in deltas],
                [d.date for d in deltas],
                [d.watch_seconds for d in deltas],
                [d.message_count for d in deltas],
                [d.emote_count for d in deltas],
                source,
            )
        return affected_rows(status)

    async def overwrite_day(
        self,
        viewer_id: str,
        channel_id: str,
        day: date,
        *,
        watch_seconds: int,
        message_count: int,
    ) -> None:
        """Replace watch seconds for one day with a recomputed value."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO viewer_channel_daily_stats
                    (viewer_id, channel_id, date, watch_seconds, message_count, emote_count)
                VALUES ($1, $2, $3, $4, $5, 0)
                ON CONFLICT (viewer_id, channel_id, date) DO UPDATE SET
                    watch_seconds = EXCLUDED.watch_seconds,
                    updated_at    = NOW()
                """,
                viewer_id,
                channel_id,
                day,
                watch_seconds,
                message_count,
            )


class MessageRepository(BaseRepository):
    """Reads over the raw chat message table, plus its retention delete."""

    async def fetch_message_timestamps(
        self, viewer_id: str, channel_id: str, start: datetime, end: datetime
    ) -> list[datetime]:
        """Message times for one pair in ``[start, end)``, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT sent_at FROM viewer_channel_messages
                WHERE viewer_id = $1 AND channel_id = $2
                  AND sent_at >= $3 AND sent_at < $4
                ORDER BY sent_at ASC, id ASC
                """,
                viewer_id,
                channel_id,
                start,
                end,
            )
            return [coerce_datetime(r["sent_at"]) for r in rows]

    async def fetch_stream_bounds(
        self, channel_id: str, start: datetime, end: datetime
    ) -> tuple[datetime, datetime | None] | None:
        """(started_at, ended_at) of the first stream that started in ``[start, end)``."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT started_at, ended_at FROM stream_sessions
                WHERE channel_id = $1 AND started_at >= $2 AND started_at < $3
                ORDER BY started_at ASC
                LIMIT 1
                """,
                channel_id,
                start,
                end,
            )
            if not row:
                return None
            ended_at = row["ended_at"]
            return (
                coerce_datetime(row["started_at"]),
                coerce_datetime(ended_at) if ended_at is not None else None,
            )

    async def find_active_chatters(self, since: datetime) -> list[tuple[str, str]]:
        """(viewer_id, channel_id) pairs that chatted in a live channel since *since*."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT m.viewer_id, m.channel_id
                FROM viewer_channel_messages m
                JOIN channels c ON c.channel_id = m.channel_id
                WHERE m.sent_at >= $1 AND c.is_live = TRUE AND c.enabled = TRUE
                GROUP BY m.viewer_id, m.channel_id
                """,
                since,
            )
            return [(r["viewer_id"], r["channel_id"]) for r in rows]

    async def delete_older_than(self, cutoff: datetime, batch_size: int) -> int:
        """Delete up to *batch_size* messages sent before *cutoff*."""
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                """
                DELETE FROM viewer_channel_messages
                WHERE id IN (
                    SELECT id FROM viewer_channel_messages
                    WHERE sent_at < $1
                    LIMIT $2
                )
                """,
                cutoff,
                batch_size,
            )
        return affected_rows(status)
