"""Repository for the persistent heartbeat dedup table."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import asyncpg

from shared.repositories.base import BaseRepository, affected_rows


class HeartbeatDedupRepository(BaseRepository):
    """Cross-instance record of heartbeat keys that were already counted."""

    async def record_new(
        self,
        entries: Sequence[tuple[str, str, str, datetime, int]],
        *,
        conn: asyncpg.Connection | None = None,
    ) -> set[str]:
        """Insert ``(dedup_key, viewer_id, channel_id, timestamp, duration)`` rows.

        Returns the keys that were not already present; those are the
        heartbeats this flush may count.
        """
        if not entries:
            return set()
        async with self.connection(conn) as c:
            rows = await c.fetch(
                """
                INSERT INTO extension_heartbeat_dedups
                    (dedup_key, viewer_id, channel_id, heartbeat_timestamp, duration_seconds)
                SELECT * FROM UNNEST($1::text[], $2::text[], $3::text[], $4::timestamptz[], $5::int[])
                ON CONFLICT (dedup_key) DO NOTHING
                RETURNING dedup_key
                """,
                [e[0] for e in entries],
                [e[1] for e in entries],
                [e[2] for e in entries],
                [e[3] for e in entries],
                [e[4] for e in entries],
            )
        return {r["dedup_key"] for r in rows}

    async def delete_older_than(self, cutoff: datetime, batch_size: int) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                """
                DELETE FROM extension_heartbeat_dedups
                WHERE dedup_key IN (
                    SELECT dedup_key FROM extension_heartbeat_dedups
                    WHERE created_at < $1
                    LIMIT $2
                )
                """,
                cutoff,
                batch_size,
            )
        return affected_rows(status)
