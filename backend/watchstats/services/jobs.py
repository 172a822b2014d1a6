"""Scheduled units of work.

Every unit returns a :class:`JobResult` instead of raising, so a scheduler
can log the summary and decide whether to retry.  The services underneath
still raise; this module is where their failures are caught and counted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from shared.dates import utc_now
from shared.repositories.channel import ChannelRepository
from shared.repositories.daily_stats import MessageRepository
from shared.repositories.heartbeat_dedup import HeartbeatDedupRepository
from shared.repositories.lifetime_stats import LifetimeStatsRepository
from watchstats.core.notifier import NotificationSink, NullSink
from watchstats.services.daily_stats import DailyStatWriter
from watchstats.services.lifetime_stats import LifetimeStatsAggregator
from watchstats.services.percentiles import PercentileRankingUpdater

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    success: bool
    summary: str


async def aggregate_pair(
    aggregator: LifetimeStatsAggregator,
    viewer_id: str,
    channel_id: str,
    *,
    allow_decrease: bool = False,
) -> JobResult:
    try:
        stats = await aggregator.aggregate(viewer_id, channel_id, allow_decrease=allow_decrease)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Lifetime aggregation failed for {viewer_id}/{channel_id}: {e}")
        return JobResult(False, f"aggregation failed for {viewer_id}/{channel_id}: {type(e).__name__}: {e}")
    return JobResult(
        True,
        f"aggregated {viewer_id}/{channel_id}: {stats.total_watch_time_minutes} min, "
        f"{stats.total_messages} messages",
    )


async def update_channel_percentiles(updater: PercentileRankingUpdater, channel_id: str) -> JobResult:
    try:
        result = await updater.update_channel(channel_id)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Percentile update failed for channel {channel_id}: {e}")
        return JobResult(False, f"percentile update failed for {channel_id}: {type(e).__name__}: {e}")
    if result.skipped:
        return JobResult(True, f"percentiles for {channel_id} skipped ({result.reason})")
    return JobResult(
        True, f"percentiles for {channel_id}: {result.updated}/{result.population} updated"
    )


class LifetimeUpdateJob:
    """Re-aggregate pairs with recent activity, then re-rank their channels."""

    def __init__(
        self,
        repository: LifetimeStatsRepository,
        aggregator: LifetimeStatsAggregator,
        percentiles: PercentileRankingUpdater,
        *,
        lookback_hours: float = 26.0,
        batch_size: int = 50,
    ) -> None:
        self.repository = repository
        self.aggregator = aggregator
        self.percentiles = percentiles
        self.lookback = timedelta(hours=lookback_hours)
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    async def run(self, *, full: bool = False, now: datetime | None = None) -> JobResult:
        if self._lock.locked():
            return JobResult(True, "lifetime update already running, skipped")

        async with self._lock:
            now = now or utc_now()
            try:
                if full:
                    pairs = await self.repository.all_pairs()
                else:
                    pairs = await self.repository.find_changed_pairs(now - self.lookback)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Lifetime update could not select pairs: {e}")
                return JobResult(False, f"pair selection failed: {type(e).__name__}: {e}")

            if not pairs:
                return JobResult(True, "no pairs to aggregate")

            failed = 0
            channels: set[str] = set()
            for i in range(0, len(pairs), self.batch_size):
                batch = pairs[i : i + self.batch_size]
                results = await asyncio.gather(
                    *(aggregate_pair(self.aggregator, viewer, channel) for viewer, channel in batch)
                )
                for (_, channel), result in zip(batch, results):
                    if result.success:
                        channels.add(channel)
                    else:
                        failed += 1

            ranking_failed = 0
            for channel_id in sorted(channels):
                if not (await update_channel_percentiles(self.percentiles, channel_id)).success:
                    ranking_failed += 1

            summary = (
                f"aggregated {len(pairs) - failed}/{len(pairs)} pair(s), "
                f"re-ranked {len(channels) - ranking_failed}/{len(channels)} channel(s)"
            )
            logger.info(f"Lifetime update ({'full' if full else 'incremental'}): {summary}")
            return JobResult(failed == 0 and ranking_failed == 0, summary)


class ChatActivityIncrementJob:
    """Credit watch time to viewers who chatted in a live channel recently.

    Runs every ``window_minutes``; each active chatter gets the whole window
    added to today's row, unless extension heartbeats already own that row.
    """

    def __init__(
        self,
        writer: DailyStatWriter,
        messages: MessageRepository,
        channels: ChannelRepository | None = None,
        *,
        notifier: NotificationSink | None = None,
        window_minutes: int = 10,
    ) -> None:
        self.writer = writer
        self.messages = messages
        self.channels = channels
        self.notifier = notifier or NullSink()
        self.window_minutes = window_minutes

    async def run(self, *, now: datetime | None = None) -> JobResult:
        now = now or utc_now()
        try:
            if self.channels is not None and await self.channels.count_live_channels() == 0:
                return JobResult(True, "no live channels")
            pairs = await self.messages.find_active_chatters(now - timedelta(minutes=self.window_minutes))
            if not pairs:
                return JobResult(True, "no active chatters")
            written = await self.writer.credit_chat_activity(
                pairs, watch_seconds=self.window_minutes * 60, watched_at=now
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Chat activity increment failed: {e}")
            return JobResult(False, f"chat increment failed: {type(e).__name__}: {e}")

        await self.notifier.notify_viewers(viewer for viewer, _ in pairs)
        return JobResult(True, f"credited {len(pairs)} active chatter(s), {written} row(s) written")


class RetentionJob:
    """Delete expired heartbeat dedup rows and old raw messages in batches."""

    def __init__(
        self,
        dedups: HeartbeatDedupRepository,
        messages: MessageRepository,
        *,
        dedup_retention_days: int = 14,
        message_retention_days: int = 90,
        batch_size: int = 2000,
    ) -> None:
        self.dedups = dedups
        self.messages = messages
        self.dedup_retention = timedelta(days=dedup_retention_days)
        self.message_retention = timedelta(days=message_retention_days)
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    async def _delete_in_batches(self, delete, cutoff: datetime) -> int:
        total = 0
        while True:
            deleted = await delete(cutoff, self.batch_size)
            total += deleted
            if deleted < self.batch_size:
                return total

    async def run(self, *, now: datetime | None = None) -> JobResult:
        if self._lock.locked():
            return JobResult(True, "retention already running, skipped")

        async with self._lock:
            now = now or utc_now()
            try:
                dedups = await self._delete_in_batches(
                    self.dedups.delete_older_than, now - self.dedup_retention
                )
                messages = await self._delete_in_batches(
                    self.messages.delete_older_than, now - self.message_retention
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Retention cleanup failed: {e}")
                return JobResult(False, f"retention failed: {type(e).__name__}: {e}")

        summary = f"deleted {dedups} heartbeat dedup row(s) and {messages} message(s)"
        if dedups or messages:
            logger.info(f"Retention: {summary}")
        return JobResult(True, summary)
