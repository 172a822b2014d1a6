"""Composition root for the watch-stats worker process."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta

from shared.database import DatabaseManager, PoolConfig
from shared.migrations.runner import MigrationRunner
from shared.repositories import (
    ChannelRepository,
    CoordinationRepository,
    DailyStatsRepository,
    HeartbeatDedupRepository,
    LifetimeStatsRepository,
    MessageRepository,
)
from watchstats.core.config import WatchStatsSettings
from watchstats.core.notifier import PgNotifySink
from watchstats.services.coordinator import DistributedCoordinator
from watchstats.services.daily_stats import DailyStatWriter
from watchstats.services.heartbeat_buffer import HeartbeatBuffer
from watchstats.services.jobs import (
    ChatActivityIncrementJob,
    JobResult,
    LifetimeUpdateJob,
    RetentionJob,
)
from watchstats.services.lifetime_stats import LifetimeStatsAggregator
from watchstats.services.percentiles import PercentileRankingUpdater

logger = logging.getLogger(__name__)


async def run_periodically(
    name: str,
    interval: float,
    job: Callable[[], Awaitable[JobResult]],
    *,
    initial_delay: float = 0.0,
) -> None:
    """Run *job* every *interval* seconds until cancelled."""
    if initial_delay:
        try:
            await asyncio.sleep(initial_delay)
        except asyncio.CancelledError:
            return
    while True:
        started = time.monotonic()
        try:
            result = await job()
            if result.success:
                logger.debug(f"{name}: {result.summary}")
            else:
                logger.warning(f"{name} failed: {result.summary}")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.exception(f"{name} crashed: {e}")
        try:
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))
        except asyncio.CancelledError:
            break


class StatsWorker:
    """Owns the pool, every repository and every service for one process.

    Nothing here is module-global: construct one worker, ``start()`` it and
    hand ``worker.heartbeats`` to whatever receives extension pings.
    """

    def __init__(self, settings: WatchStatsSettings, *, run_migrations: bool = True) -> None:
        self.settings = settings
        self.run_migrations = run_migrations
        self.db = DatabaseManager(settings.database_url, PoolConfig.for_service("worker"))
        self._tasks: list[asyncio.Task] = []
        self._started = False

    def _build(self) -> None:
        s = self.settings
        pool = self.db.pool

        self.channels = ChannelRepository(pool, cache_ttl=s.channel_cache_ttl_seconds)
        self.daily_stats = DailyStatsRepository(pool)
        self.messages = MessageRepository(pool)
        self.lifetime_stats = LifetimeStatsRepository(pool)
        self.heartbeat_dedups = HeartbeatDedupRepository(pool)
        self.coordination = CoordinationRepository(pool)

        self.notifier = PgNotifySink(pool, s.notify_channel)
        self.writer = DailyStatWriter(
            pool, self.daily_stats, self.messages, self.lifetime_stats, self.heartbeat_dedups
        )
        self.heartbeats = HeartbeatBuffer(
            self.writer,
            self.channels.resolve_channel_id,
            notifier=self.notifier,
            flush_interval=s.heartbeat_flush_interval_seconds,
            batch_size=s.heartbeat_flush_batch_size,
            dedup_ttl=s.heartbeat_dedup_ttl_seconds,
            dedup_max_entries=s.heartbeat_dedup_max_entries,
            dedup_cleanup_interval=s.heartbeat_dedup_cleanup_interval_seconds,
            max_backoff_multiplier=s.heartbeat_max_backoff_multiplier,
        )
        self.aggregator = LifetimeStatsAggregator(self.lifetime_stats)
        self.percentiles = PercentileRankingUpdater(
            self.lifetime_stats,
            recompute_window=timedelta(hours=s.percentile_recompute_window_hours),
        )
        self.coordinator = DistributedCoordinator(
            self.coordination,
            s.instance_id,
            max_channels=s.max_channels_per_instance,
            heartbeat_interval=s.lock_heartbeat_interval_seconds,
            lock_timeout=s.lock_timeout_seconds,
        )
        self.lifetime_job = LifetimeUpdateJob(
            self.lifetime_stats,
            self.aggregator,
            self.percentiles,
            lookback_hours=s.lifetime_lookback_hours,
            batch_size=s.lifetime_batch_size,
        )
        self.chat_increment_job = ChatActivityIncrementJob(
            self.writer,
            self.messages,
            self.channels,
            notifier=self.notifier,
            window_minutes=s.chat_increment_minutes,
        )
        self.retention_job = RetentionJob(
            self.heartbeat_dedups,
            self.messages,
            dedup_retention_days=s.heartbeat_dedup_retention_days,
            message_retention_days=s.message_retention_days,
            batch_size=s.retention_batch_size,
        )

    async def start(self) -> None:
        if self._started:
            return
        s = self.settings
        logger.info(f"Starting watch-stats worker ({s.instance_id})")

        await self.db.connect()
        try:
            if self.run_migrations:
                await MigrationRunner(self.db.pool).run_pending()
            self._build()
            await self.coordinator.start()
        except Exception:
            await self.db.disconnect()
            raise

        self.heartbeats.start()
        self._tasks = [
            asyncio.create_task(
                run_periodically(
                    "Lifetime update",
                    s.lifetime_update_interval_seconds,
                    self.lifetime_job.run,
                    initial_delay=60.0,
                ),
                name="lifetime-update",
            ),
            asyncio.create_task(
                run_periodically(
                    "Chat activity increment",
                    s.chat_increment_minutes * 60,
                    self.chat_increment_job.run,
                    initial_delay=s.chat_increment_minutes * 60,
                ),
                name="chat-increment",
            ),
            asyncio.create_task(
                run_periodically(
                    "Retention cleanup",
                    s.retention_interval_seconds,
                    self.retention_job.run,
                    initial_delay=300.0,
                ),
                name="retention",
            ),
        ]
        self._started = True
        logger.info("Watch-stats worker started")

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("Stopping watch-stats worker...")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.heartbeats.stop()
        await self.coordinator.stop()
        await self.db.disconnect()
        self._started = False
        logger.info("Watch-stats worker stopped")
