from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import utc

from shared.models.stats import LifetimeStats
from watchstats.services.jobs import (
    ChatActivityIncrementJob,
    JobResult,
    LifetimeUpdateJob,
    RetentionJob,
)
from watchstats.services.percentiles import PercentileRunResult

NOW = utc(2026, 7, 1, 12, 0)


def make_lifetime_job(pairs, *, fail_for=(), batch_size=50):
    repository = MagicMock()
    repository.find_changed_pairs = AsyncMock(return_value=pairs)
    repository.all_pairs = AsyncMock(return_value=pairs)

    async def aggregate(viewer_id, channel_id, *, allow_decrease=False):
        if (viewer_id, channel_id) in fail_for:
            raise ConnectionError("db down")
        return LifetimeStats(viewer_id, channel_id, total_watch_time_minutes=10)

    aggregator = MagicMock()
    aggregator.aggregate = AsyncMock(side_effect=aggregate)
    percentiles = MagicMock()
    percentiles.update_channel = AsyncMock(
        side_effect=lambda channel_id: PercentileRunResult(channel_id, skipped=False, population=2, updated=2)
    )
    job = LifetimeUpdateJob(repository, aggregator, percentiles, batch_size=batch_size)
    return job, repository, aggregator, percentiles


class TestLifetimeUpdateJob:
    """Incremental and full re-aggregation runs."""

    @pytest.mark.asyncio
    async def test_incremental_uses_lookback_window(self):
        job, repository, aggregator, percentiles = make_lifetime_job([("v1", "c1"), ("v2", "c2")])

        result = await job.run(now=NOW)

        assert result.success is True
        repository.find_changed_pairs.assert_awaited_once_with(NOW - timedelta(hours=26))
        repository.all_pairs.assert_not_awaited()
        assert aggregator.aggregate.await_count == 2
        ranked = sorted(c.args[0] for c in percentiles.update_channel.await_args_list)
        assert ranked == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_full_run_covers_all_pairs(self):
        job, repository, _, _ = make_lifetime_job([("v1", "c1")])

        await job.run(full=True, now=NOW)

        repository.all_pairs.assert_awaited_once()
        repository.find_changed_pairs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pair_failures_are_counted_not_raised(self):
        pairs = [("v1", "c1"), ("v2", "c1"), ("v3", "c2")]
        job, _, aggregator, percentiles = make_lifetime_job(pairs, fail_for={("v3", "c2")}, batch_size=2)

        result = await job.run(now=NOW)

        assert result.success is False
        assert "2/3 pair(s)" in result.summary
        assert aggregator.aggregate.await_count == 3
        # Only channels with a successful aggregation are re-ranked
        assert [c.args[0] for c in percentiles.update_channel.await_args_list] == ["c1"]

    @pytest.mark.asyncio
    async def test_percentile_failure_marks_run_failed(self):
        job, _, _, percentiles = make_lifetime_job([("v1", "c1")])
        percentiles.update_channel.side_effect = ConnectionError("db down")

        result = await job.run(now=NOW)

        assert result.success is False
        assert "0/1 channel(s)" in result.summary

    @pytest.mark.asyncio
    async def test_no_pairs(self):
        job, _, aggregator, _ = make_lifetime_job([])

        result = await job.run(now=NOW)

        assert result.success is True
        aggregator.aggregate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pair_selection_failure(self):
        job, repository, _, _ = make_lifetime_job([])
        repository.find_changed_pairs.side_effect = ConnectionError("db down")

        result = await job.run(now=NOW)

        assert result.success is False
        assert "pair selection failed" in result.summary

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self):
        job, repository, _, _ = make_lifetime_job([("v1", "c1")])

        async with job._lock:
            result = await job.run(now=NOW)

        assert result.success is True
        assert "skipped" in result.summary
        repository.find_changed_pairs.assert_not_awaited()


class TestChatActivityIncrementJob:
    @pytest.mark.asyncio
    async def test_credits_window_to_active_chatters(self):
        writer = MagicMock()
        writer.credit_chat_activity = AsyncMock(return_value=2)
        messages = MagicMock()
        messages.find_active_chatters = AsyncMock(return_value=[("v1", "c1"), ("v2", "c1")])
        notifier = MagicMock()
        notifier.notify_viewers = AsyncMock()
        job = ChatActivityIncrementJob(writer, messages, notifier=notifier, window_minutes=10)

        result = await job.run(now=NOW)

        assert result.success is True
        messages.find_active_chatters.assert_awaited_once_with(NOW - timedelta(minutes=10))
        writer.credit_chat_activity.assert_awaited_once_with(
            [("v1", "c1"), ("v2", "c1")], watch_seconds=600, watched_at=NOW
        )
        (viewers,) = notifier.notify_viewers.await_args.args
        assert list(viewers) == ["v1", "v2"]

    @pytest.mark.asyncio
    async def test_no_chatters(self):
        writer = MagicMock()
        writer.credit_chat_activity = AsyncMock()
        messages = MagicMock()
        messages.find_active_chatters = AsyncMock(return_value=[])

        result = await ChatActivityIncrementJob(writer, messages).run(now=NOW)

        assert result.success is True
        writer.credit_chat_activity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_write_failure_reported(self):
        writer = MagicMock()
        writer.credit_chat_activity = AsyncMock(side_effect=ConnectionError("db down"))
        messages = MagicMock()
        messages.find_active_chatters = AsyncMock(return_value=[("v1", "c1")])

        result = await ChatActivityIncrementJob(writer, messages).run(now=NOW)

        assert result.success is False

    @pytest.mark.asyncio
    async def test_skips_when_no_channel_is_live(self):
        writer = MagicMock()
        writer.credit_chat_activity = AsyncMock()
        messages = MagicMock()
        messages.find_active_chatters = AsyncMock(return_value=[("v1", "c1")])
        channels = MagicMock()
        channels.count_live_channels = AsyncMock(return_value=0)

        result = await ChatActivityIncrementJob(writer, messages, channels).run(now=NOW)

        assert result == JobResult(True, "no live channels")
        messages.find_active_chatters.assert_not_awaited()
        writer.credit_chat_activity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_runs_while_a_channel_is_live(self):
        writer = MagicMock()
        writer.credit_chat_activity = AsyncMock(return_value=1)
        messages = MagicMock()
        messages.find_active_chatters = AsyncMock(return_value=[("v1", "c1")])
        channels = MagicMock()
        channels.count_live_channels = AsyncMock(return_value=2)

        result = await ChatActivityIncrementJob(writer, messages, channels).run(now=NOW)

        assert result.success is True
        writer.credit_chat_activity.assert_awaited_once()


class TestRetentionJob:
    @pytest.mark.asyncio
    async def test_deletes_until_short_batch(self):
        dedups = MagicMock()
        dedups.delete_older_than = AsyncMock(side_effect=[100, 100, 7])
        messages = MagicMock()
        messages.delete_older_than = AsyncMock(return_value=0)
        job = RetentionJob(dedups, messages, dedup_retention_days=14, message_retention_days=90, batch_size=100)

        result = await job.run(now=NOW)

        assert result.success is True
        assert dedups.delete_older_than.await_count == 3
        dedups.delete_older_than.assert_awaited_with(NOW - timedelta(days=14), 100)
        messages.delete_older_than.assert_awaited_once_with(NOW - timedelta(days=90), 100)
        assert "207 heartbeat dedup row(s)" in result.summary

    @pytest.mark.asyncio
    async def test_failure_reported(self):
        dedups = MagicMock()
        dedups.delete_older_than = AsyncMock(side_effect=ConnectionError("db down"))
        messages = MagicMock()
        messages.delete_older_than = AsyncMock(return_value=0)

        result = await RetentionJob(dedups, messages).run(now=NOW)

        assert result.success is False
        messages.delete_older_than.assert_not_awaited()
