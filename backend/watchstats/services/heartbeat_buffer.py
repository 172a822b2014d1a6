"""In-process batching and deduplication of extension watch heartbeats."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from shared.cache import AsyncTTLCache
from shared.dates import coerce_datetime
from shared.models.stats import HeartbeatBufferEntry
from watchstats.core.notifier import NotificationSink, NullSink
from watchstats.services.daily_stats import DailyStatWriter

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatResult:
    success: bool = True
    tracked: bool = True
    deduplicated: bool = False
    channel_id: str | None = None
    message: str = ""


class HeartbeatBuffer:
    """Absorbs "still watching" pings and writes them in batches.

    Lifecycle: ``start()`` launches the flush loop; ``stop()`` cancels it and
    drains whatever is still pending.

    Flush policy:
      - every ``flush_interval`` seconds, or as soon as ``batch_size`` entries
        are pending
      - each flush drains at most ``batch_size`` entries
      - on failure the drained entries go back to the front of the buffer and
        the interval is multiplied by 2, 4, ... up to ``max_backoff_multiplier``;
        one successful flush resets it
    """

    def __init__(
        self,
        writer: DailyStatWriter,
        resolve_channel_id: Callable[[str], Awaitable[str | None]],
        *,
        notifier: NotificationSink | None = None,
        flush_interval: float = 5.0,
        batch_size: int = 200,
        dedup_ttl: float = 300.0,
        dedup_max_entries: int = 20000,
        dedup_cleanup_interval: float = 60.0,
        max_backoff_multiplier: int = 32,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.writer = writer
        self.resolve_channel_id = resolve_channel_id
        self.notifier = notifier or NullSink()
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.dedup_cleanup_interval = dedup_cleanup_interval
        self.max_backoff_multiplier = max_backoff_multiplier
        self._timer = timer

        self._dedup = AsyncTTLCache(
            maxsize=dedup_max_entries, ttl=dedup_ttl, stale=False, timer=timer
        )
        self._pending: dict[str, HeartbeatBufferEntry] = {}
        self._backoff = 1
        self._last_dedup_cleanup = timer()
        self._flush_lock = asyncio.Lock()
        self._flush_requested = asyncio.Event()
        self._task: asyncio.Task | None = None

    # ── Ingestion ────────────────────────────────────────────────────

    async def submit(
        self,
        viewer_id: str,
        channel_name: str,
        timestamp: datetime | str,
        duration_seconds: int,
        *,
        channel_id: str | None = None,
    ) -> HeartbeatResult:
        """Accept one heartbeat.  Never writes to the database directly."""
        if duration_seconds <= 0:
            logger.debug(f"Ignoring heartbeat from {viewer_id} with duration {duration_seconds}")
            return HeartbeatResult(success=False, message="Heartbeat duration must be positive")

        if channel_id is None:
            channel_id = await self.resolve_channel_id(channel_name)
        if channel_id is None:
            logger.debug(f"Heartbeat for untracked channel: {channel_name}")
            return HeartbeatResult(tracked=False, message="Channel not tracked")

        heartbeat_at = coerce_datetime(timestamp)
        key = HeartbeatBufferEntry.make_key(viewer_id, channel_id, heartbeat_at, duration_seconds)
        if not self._dedup.add(key):
            return HeartbeatResult(channel_id=channel_id, deduplicated=True, message="Duplicate heartbeat")

        entry = HeartbeatBufferEntry(
            dedup_key=key,
            viewer_id=viewer_id,
            channel_id=channel_id,
            heartbeat_at=heartbeat_at,
            duration_seconds=duration_seconds,
            watch_seconds=duration_seconds,
            last_watched_at=heartbeat_at,
        )
        existing = self._pending.get(key)
        if existing is not None:
            existing.absorb(entry)
        else:
            self._pending[key] = entry

        if len(self._pending) >= self.batch_size:
            self._flush_requested.set()
        return HeartbeatResult(channel_id=channel_id, message="Buffered")

    # ── Flushing ─────────────────────────────────────────────────────

    def _drain(self) -> list[HeartbeatBufferEntry]:
        keys = list(self._pending)[: self.batch_size]
        return [self._pending.pop(k) for k in keys]

    def _requeue(self, batch: list[HeartbeatBufferEntry]) -> None:
        # Failed batch goes back in front; re-submitted keys fold into it
        restored = {e.dedup_key: e for e in batch}
        for key, entry in self._pending.items():
            if key in restored:
                restored[key].absorb(entry)
            else:
                restored[key] = entry
        self._pending = restored

    async def flush(self) -> int:
        """Write one batch.  Returns the number of entries drained and persisted.

        Failures are logged and requeued, never raised.
        """
        async with self._flush_lock:
            batch = self._drain()
            if not batch:
                return 0
            try:
                result = await self.writer.persist_heartbeats(batch)
            except asyncio.CancelledError:
                self._requeue(batch)
                raise
            except Exception as e:
                self._requeue(batch)
                self._backoff = min(self._backoff * 2, self.max_backoff_multiplier)
                logger.warning(
                    f"Heartbeat flush failed ({type(e).__name__}: {e}), {len(batch)} entries "
                    f"requeued, next attempt in {self.flush_interval * self._backoff:.0f}s"
                )
                return 0

            if self._backoff != 1:
                logger.info("Heartbeat flush recovered, backoff reset")
            self._backoff = 1
            logger.debug(
                f"Flushed {len(batch)} heartbeat entries: {result.counted} counted, "
                f"{result.duplicates} duplicate(s), {result.rows_written} row(s) written"
            )

        if len(self._pending) >= self.batch_size:
            self._flush_requested.set()

        try:
            await self.notifier.notify_viewers(result.viewer_ids)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Viewer notification after flush failed: {e}")
        return len(batch)

    async def flush_all(self) -> int:
        """Flush until the buffer is empty or a flush fails."""
        total = 0
        while self._pending:
            flushed = await self.flush()
            if flushed == 0:
                break
            total += flushed
        return total

    def cleanup_dedup(self, *, force: bool = False) -> int:
        """Purge expired dedup keys, at most once per cleanup interval."""
        now = self._timer()
        if not force and now - self._last_dedup_cleanup < self.dedup_cleanup_interval:
            return 0
        self._last_dedup_cleanup = now
        removed = self._dedup.expire()
        if removed:
            logger.debug(f"Purged {removed} expired heartbeat dedup keys")
        return removed

    # ── Lifecycle ────────────────────────────────────────────────────

    async def _flush_loop(self) -> None:
        while True:
            try:
                delay = self.flush_interval * self._backoff
                if self._backoff == 1:
                    try:
                        await asyncio.wait_for(self._flush_requested.wait(), timeout=delay)
                    except TimeoutError:
                        pass
                else:
                    await asyncio.sleep(delay)
                self._flush_requested.clear()
                await self.flush()
                self.cleanup_dedup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Heartbeat flush loop error: {e}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._flush_loop(), name="heartbeat-flush")
            logger.info(
                f"Heartbeat buffer started (interval={self.flush_interval}s, batch={self.batch_size})"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        flushed = await self.flush_all()
        if self._pending:
            logger.warning(f"Heartbeat buffer stopped with {len(self._pending)} unflushed entries")
        else:
            logger.info(f"Heartbeat buffer stopped ({flushed} entries flushed on shutdown)")

    # ── Introspection ────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def backoff_multiplier(self) -> int:
        return self._backoff

    @property
    def dedup_size(self) -> int:
        return self._dedup.size
