from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeClock, utc

from watchstats.services.daily_stats import HeartbeatPersistResult
from watchstats.services.heartbeat_buffer import HeartbeatBuffer

TS = utc(2026, 4, 1, 21, 0, 0)


def make_writer():
    writer = MagicMock()
    writer.persist_heartbeats = AsyncMock(
        side_effect=lambda entries: HeartbeatPersistResult(
            counted=len(entries), viewer_ids={e.viewer_id for e in entries}
        )
    )
    return writer


def make_buffer(writer=None, *, channel_id="c1", clock=None, **kwargs):
    return HeartbeatBuffer(
        writer or make_writer(),
        AsyncMock(return_value=channel_id),
        timer=clock or FakeClock(),
        **kwargs,
    )


class TestSubmit:
    """Channel resolution, deduplication and buffering."""

    @pytest.mark.asyncio
    async def test_untracked_channel_is_benign(self):
        buffer = make_buffer(channel_id=None)

        result = await buffer.submit("v1", "nobody", TS, 60)

        assert result.success is True
        assert result.tracked is False
        assert buffer.pending_count == 0

    @pytest.mark.asyncio
    async def test_known_channel_id_skips_resolution(self):
        resolver = AsyncMock(return_value="c1")
        buffer = HeartbeatBuffer(make_writer(), resolver, timer=FakeClock())

        result = await buffer.submit("v1", "ignored", TS, 60, channel_id="c9")

        assert result.channel_id == "c9"
        resolver.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_within_ttl_is_flagged(self):
        writer = make_writer()
        buffer = make_buffer(writer)

        first = await buffer.submit("v1", "chan", TS, 60)
        second = await buffer.submit("v1", "chan", TS, 60)
        await buffer.flush()

        assert first.deduplicated is False
        assert second.deduplicated is True
        assert second.success is True
        (entries,) = writer.persist_heartbeats.await_args.args
        assert len(entries) == 1
        assert entries[0].watch_seconds == 60

    @pytest.mark.asyncio
    async def test_duplicate_after_ttl_counts_again(self):
        clock = FakeClock()
        writer = make_writer()
        buffer = make_buffer(writer, clock=clock, dedup_ttl=300)

        await buffer.submit("v1", "chan", TS, 60)
        await buffer.flush()
        clock.advance(301)
        result = await buffer.submit("v1", "chan", TS, 60)
        await buffer.flush()

        assert result.deduplicated is False
        assert writer.persist_heartbeats.await_count == 2

    @pytest.mark.asyncio
    async def test_repeat_of_pending_key_after_ttl_accumulates(self):
        clock = FakeClock()
        buffer = make_buffer(clock=clock, dedup_ttl=300)

        await buffer.submit("v1", "chan", TS, 60)
        clock.advance(301)
        await buffer.submit("v1", "chan", TS, 60)

        assert buffer.pending_count == 1
        (entry,) = buffer._pending.values()
        assert entry.watch_seconds == 120

    @pytest.mark.asyncio
    async def test_distinct_heartbeats_are_buffered_separately(self):
        buffer = make_buffer()

        await buffer.submit("v1", "chan", TS, 60)
        await buffer.submit("v1", "chan", TS.replace(minute=1), 60)

        assert buffer.pending_count == 2

    @pytest.mark.asyncio
    async def test_non_positive_duration_is_refused_without_raising(self):
        resolve = AsyncMock(return_value="c1")
        buffer = make_buffer()
        buffer.resolve_channel_id = resolve

        for duration in (0, -30):
            result = await buffer.submit("v1", "chan", TS, duration)
            assert result.success is False
            assert "positive" in result.message

        assert buffer.pending_count == 0
        resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_threshold_requests_flush(self):
        buffer = make_buffer(batch_size=2)

        await buffer.submit("v1", "chan", TS, 60)
        assert not buffer._flush_requested.is_set()
        await buffer.submit("v2", "chan", TS, 60)
        assert buffer._flush_requested.is_set()


class TestFlush:
    """Batch draining, requeue and backoff."""

    @pytest.mark.asyncio
    async def test_flush_drains_at_most_one_batch(self):
        writer = make_writer()
        buffer = make_buffer(writer, batch_size=2)
        for viewer in ("v1", "v2", "v3"):
            await buffer.submit(viewer, "chan", TS, 60)

        assert await buffer.flush() == 2
        assert buffer.pending_count == 1
        assert await buffer.flush_all() == 1
        assert buffer.pending_count == 0

    @pytest.mark.asyncio
    async def test_empty_flush_does_not_write(self):
        writer = make_writer()
        buffer = make_buffer(writer)

        assert await buffer.flush() == 0
        writer.persist_heartbeats.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_requeues_and_backs_off(self):
        writer = make_writer()
        writer.persist_heartbeats.side_effect = ConnectionError("db down")
        buffer = make_buffer(writer, max_backoff_multiplier=8)
        await buffer.submit("v1", "chan", TS, 60)

        ladder = []
        for _ in range(5):
            assert await buffer.flush() == 0
            ladder.append(buffer.backoff_multiplier)

        assert ladder == [2, 4, 8, 8, 8]
        assert buffer.pending_count == 1

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self):
        writer = make_writer()
        writer.persist_heartbeats.side_effect = [
            ConnectionError("db down"),
            HeartbeatPersistResult(counted=1, viewer_ids={"v1"}),
        ]
        buffer = make_buffer(writer)
        await buffer.submit("v1", "chan", TS, 60)

        await buffer.flush()
        assert buffer.backoff_multiplier == 2
        assert await buffer.flush() == 1
        assert buffer.backoff_multiplier == 1
        assert buffer.pending_count == 0

    @pytest.mark.asyncio
    async def test_requeue_folds_entries_added_during_failed_flush(self):
        clock = FakeClock()
        buffer = make_buffer(clock=clock, dedup_ttl=10)
        await buffer.submit("v1", "chan", TS, 60)
        batch = buffer._drain()

        # Same heartbeat arrives again (dedup expired) while the batch is out
        clock.advance(11)
        await buffer.submit("v1", "chan", TS, 60)
        buffer._requeue(batch)

        assert buffer.pending_count == 1
        assert buffer._pending[batch[0].dedup_key].watch_seconds == 120

    @pytest.mark.asyncio
    async def test_requeued_entries_go_first(self):
        buffer = make_buffer()
        await buffer.submit("v1", "chan", TS, 60)
        batch = buffer._drain()
        await buffer.submit("v2", "chan", TS, 60)

        buffer._requeue(batch)

        assert [e.viewer_id for e in buffer._pending.values()] == ["v1", "v2"]

    @pytest.mark.asyncio
    async def test_notifies_viewers_after_success(self):
        notifier = MagicMock()
        notifier.notify_viewers = AsyncMock()
        buffer = make_buffer(notifier=notifier)
        await buffer.submit("v1", "chan", TS, 60)

        await buffer.flush()

        notifier.notify_viewers.assert_awaited_once_with({"v1"})

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_flush(self):
        notifier = MagicMock()
        notifier.notify_viewers = AsyncMock(side_effect=RuntimeError("sink down"))
        buffer = make_buffer(notifier=notifier)
        await buffer.submit("v1", "chan", TS, 60)

        assert await buffer.flush() == 1
        assert buffer.backoff_multiplier == 1

    @pytest.mark.asyncio
    async def test_no_notification_when_flush_fails(self):
        writer = make_writer()
        writer.persist_heartbeats.side_effect = ConnectionError("db down")
        notifier = MagicMock()
        notifier.notify_viewers = AsyncMock()
        buffer = make_buffer(writer, notifier=notifier)
        await buffer.submit("v1", "chan", TS, 60)

        await buffer.flush()

        notifier.notify_viewers.assert_not_awaited()


class TestDedupCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_respects_interval(self):
        clock = FakeClock()
        buffer = make_buffer(clock=clock, dedup_ttl=5, dedup_cleanup_interval=60)
        await buffer.submit("v1", "chan", TS, 60)
        clock.advance(10)

        assert buffer.cleanup_dedup() == 0  # interval not reached yet
        clock.advance(60)
        assert buffer.cleanup_dedup() == 1
        assert buffer.dedup_size == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_flushes_pending_entries(self):
        writer = make_writer()
        buffer = make_buffer(writer, flush_interval=3600)
        buffer.start()
        await buffer.submit("v1", "chan", TS, 60)

        await buffer.stop()

        assert buffer.pending_count == 0
        writer.persist_heartbeats.assert_awaited_once()
