"""Daily stat writes: increment-only routine path plus opt-in reconciliation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime

import asyncpg

from shared.dates import coerce_date, day_bounds
from shared.models.stats import (
    SOURCE_CHAT,
    SOURCE_EXTENSION,
    DailyStatDelta,
    HeartbeatBufferEntry,
)
from shared.repositories.daily_stats import DailyStatsRepository, MessageRepository
from shared.repositories.heartbeat_dedup import HeartbeatDedupRepository
from shared.repositories.lifetime_stats import LifetimeStatsRepository
from watchstats.services.sessions import reconstruct_sessions

logger = logging.getLogger(__name__)


def coalesce_deltas(deltas: Iterable[DailyStatDelta]) -> list[DailyStatDelta]:
    """Sum deltas that target the same ``(viewer, channel, date)`` row."""
    merged: dict[tuple[str, str, date], DailyStatDelta] = {}
    for d in deltas:
        current = merged.get(d.key)
        if current is None:
            merged[d.key] = DailyStatDelta(
                viewer_id=d.viewer_id,
                channel_id=d.channel_id,
                date=d.date,
                watch_seconds=d.watch_seconds,
                message_count=d.message_count,
                emote_count=d.emote_count,
                last_watched_at=d.last_watched_at,
            )
            continue
        current.watch_seconds += d.watch_seconds
        current.message_count += d.message_count
        current.emote_count += d.emote_count
        if d.last_watched_at is not None and (
            current.last_watched_at is None or d.last_watched_at > current.last_watched_at
        ):
            current.last_watched_at = d.last_watched_at
    return list(merged.values())


def _last_watched_touches(deltas: Iterable[DailyStatDelta]) -> list[tuple[str, str, datetime]]:
    latest: dict[tuple[str, str], datetime] = {}
    for d in deltas:
        if d.last_watched_at is None:
            continue
        pair = (d.viewer_id, d.channel_id)
        if pair not in latest or d.last_watched_at > latest[pair]:
            latest[pair] = d.last_watched_at
    return [(viewer, channel, when) for (viewer, channel), when in latest.items()]


@dataclass
class HeartbeatPersistResult:
    counted: int = 0
    duplicates: int = 0
    rows_written: int = 0
    persistent_dedup: bool = True
    viewer_ids: set[str] = field(default_factory=set)


@dataclass
class RecalculationResult:
    applied: bool
    reason: str
    watch_seconds: int = 0
    message_count: int = 0
    session_count: int = 0


class DailyStatWriter:
    """Applies watch-time and message deltas to ``viewer_channel_daily_stats``.

    Every routine writer (heartbeat flush, chat-activity job) goes through
    the additive upsert, so concurrent contributions sum instead of
    overwriting each other.  :meth:`recalculate_day` is the one overwrite
    path and must be explicitly enabled by the caller.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        daily_stats: DailyStatsRepository,
        messages: MessageRepository,
        lifetime_stats: LifetimeStatsRepository,
        heartbeat_dedups: HeartbeatDedupRepository,
    ) -> None:
        self.pool = pool
        self.daily_stats = daily_stats
        self.messages = messages
        self.lifetime_stats = lifetime_stats
        self.heartbeat_dedups = heartbeat_dedups

    # ── Increment path ───────────────────────────────────────────────

    async def increment(
        self,
        viewer_id: str,
        channel_id: str,
        day: date | datetime | str,
        *,
        watch_seconds: int = 0,
        message_count: int = 0,
        emote_count: int = 0,
        source: str = SOURCE_CHAT,
    ) -> int:
        delta = DailyStatDelta(
            viewer_id=viewer_id,
            channel_id=channel_id,
            date=coerce_date(day),
            watch_seconds=watch_seconds,
            message_count=message_count,
            emote_count=emote_count,
        )
        return await self.increment_many([delta], source=source)

    async def increment_many(
        self, deltas: Iterable[DailyStatDelta], *, source: str = SOURCE_CHAT
    ) -> int:
        deltas = list(deltas)
        for d in deltas:
            if d.watch_seconds < 0 or d.message_count < 0 or d.emote_count < 0:
                raise ValueError(f"Daily stat deltas must not be negative: {d}")
        return await self.daily_stats.apply_deltas(coalesce_deltas(deltas), source=source)

    async def credit_chat_activity(
        self,
        pairs: Iterable[tuple[str, str]],
        *,
        watch_seconds: int,
        watched_at: datetime,
    ) -> int:
        """Add *watch_seconds* to today's row for each active chatter.

        Rows already owned by extension heartbeats are left alone by the
        upsert.  Returns rows touched.
        """
        day = coerce_date(watched_at)
        deltas = coalesce_deltas(
            DailyStatDelta(
                viewer_id=viewer_id,
                channel_id=channel_id,
                date=day,
                watch_seconds=watch_seconds,
                last_watched_at=watched_at,
            )
            for viewer_id, channel_id in pairs
        )
        if not deltas:
            return 0
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                written = await self.daily_stats.apply_deltas(deltas, source=SOURCE_CHAT, conn=conn)
                await self.lifetime_stats.touch_last_watched(_last_watched_touches(deltas), conn=conn)
        return written

    # ── Heartbeat flush ──────────────────────────────────────────────

    async def _filter_persisted_duplicates(
        self, conn: asyncpg.Connection, entries: Sequence[HeartbeatBufferEntry]
    ) -> tuple[list[HeartbeatBufferEntry], bool]:
        """Drop entries another instance (or an earlier flush) already counted.

        Runs in a savepoint so that a failure here (e.g. the dedup table is
        missing) leaves the outer transaction usable.
        """
        rows = [
            (e.dedup_key, e.viewer_id, e.channel_id, e.heartbeat_at, e.duration_seconds)
            for e in entries
        ]
        try:
            async with conn.transaction():
                new_keys = await self.heartbeat_dedups.record_new(rows, conn=conn)
        except asyncpg.PostgresError as e:
            logger.warning(
                f"Persistent heartbeat dedup unavailable ({type(e).__name__}: {e}), "
                f"flushing {len(entries)} entries without it"
            )
            return list(entries), False
        return [e for e in entries if e.dedup_key in new_keys], True

    async def persist_heartbeats(self, entries: Sequence[HeartbeatBufferEntry]) -> HeartbeatPersistResult:
        """Write a drained batch of heartbeat entries in one transaction.

        Raises on database failure so the buffer can requeue the batch.
        """
        result = HeartbeatPersistResult()
        if not entries:
            return result

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                counted, result.persistent_dedup = await self._filter_persisted_duplicates(
                    conn, entries
                )
                result.duplicates = len(entries) - len(counted)
                deltas = coalesce_deltas(
                    DailyStatDelta(
                        viewer_id=e.viewer_id,
                        channel_id=e.channel_id,
                        date=e.date,
                        watch_seconds=e.watch_seconds,
                        last_watched_at=e.last_watched_at,
                    )
                    for e in counted
                )
                if deltas:
                    result.rows_written = await self.daily_stats.apply_deltas(
                        deltas, source=SOURCE_EXTENSION, conn=conn
                    )
                    await self.lifetime_stats.touch_last_watched(
                        _last_watched_touches(deltas), conn=conn
                    )

        result.counted = len(counted)
        result.viewer_ids = {e.viewer_id for e in counted}
        return result

    # ── Reconciliation (opt-in overwrite) ────────────────────────────

    async def recalculate_day(
        self,
        viewer_id: str,
        channel_id: str,
        day: date | datetime | str,
        *,
        allow_overwrite: bool = False,
    ) -> RecalculationResult:
        """Recompute one day's watch seconds from raw messages and overwrite.

        Without ``allow_overwrite`` this is a no-op: overwriting races with
        the increment writers and is reserved for manual reconciliation.
        """
        if not allow_overwrite:
            logger.debug(
                f"Skip overwrite recalculation for viewer {viewer_id} channel {channel_id} "
                "(overwrite not enabled)"
            )
            return RecalculationResult(applied=False, reason="overwrite not enabled")

        start, end = day_bounds(day)
        bounds = await self.messages.fetch_stream_bounds(channel_id, start, end)
        stream_start, stream_end = bounds if bounds else (None, None)
        timestamps = await self.messages.fetch_message_timestamps(viewer_id, channel_id, start, end)

        summary = reconstruct_sessions(timestamps, stream_start=stream_start, stream_end=stream_end)
        if summary.message_count == 0:
            return RecalculationResult(applied=False, reason="no messages")

        await self.daily_stats.overwrite_day(
            viewer_id,
            channel_id,
            start.date(),
            watch_seconds=summary.total_seconds,
            message_count=summary.message_count,
        )
        logger.info(
            f"Recalculated watch time for viewer {viewer_id} in channel {channel_id} "
            f"on {start.date()}: {summary.total_seconds // 60} min over "
            f"{len(summary.sessions)} session(s)"
        )
        return RecalculationResult(
            applied=True,
            reason="overwritten",
            watch_seconds=summary.total_seconds,
            message_count=summary.message_count,
            session_count=len(summary.sessions),
        )
