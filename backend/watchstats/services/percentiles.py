"""Per-channel percentile ranking of viewers by watch time and messages."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from shared.dates import coerce_datetime, utc_now
from shared.models.stats import PercentileUpdate, RankingRow
from shared.repositories.lifetime_stats import LifetimeStatsRepository

logger = logging.getLogger(__name__)


def _percent_ranks(rows: Sequence[RankingRow], value) -> dict[str, float]:
    # Ties are broken by viewer id so unchanged input always ranks the same
    ordered = sorted(rows, key=lambda r: (value(r), r.viewer_id))
    n = len(ordered)
    return {r.viewer_id: index * 100.0 / n for index, r in enumerate(ordered)}


def rank_percentiles(rows: Sequence[RankingRow]) -> dict[str, PercentileUpdate]:
    """Percentile of every viewer among *rows*: ``rank_index * 100 / n``.

    The lowest value gets 0; the highest gets ``(n - 1) * 100 / n``.
    """
    if not rows:
        return {}
    watch = _percent_ranks(rows, lambda r: r.total_watch_time_minutes)
    messages = _percent_ranks(rows, lambda r: r.total_messages)
    return {
        r.viewer_id: PercentileUpdate(
            viewer_id=r.viewer_id,
            watch_time_percentile=watch[r.viewer_id],
            message_percentile=messages[r.viewer_id],
        )
        for r in rows
    }


@dataclass
class PercentileRunResult:
    channel_id: str
    skipped: bool
    reason: str = ""
    population: int = 0
    updated: int = 0


class PercentileRankingUpdater:
    """Rate-limited percentile recompute.

    A channel is only re-ranked when one of its lifetime rows changed since
    the previous run (bounded by ``recompute_window``), and only rows changed
    within the window get their percentile written.  Older rows keep their
    last value until they change again.
    """

    def __init__(
        self,
        repository: LifetimeStatsRepository,
        *,
        recompute_window: timedelta = timedelta(hours=24),
    ) -> None:
        self.repository = repository
        self.recompute_window = recompute_window
        self._last_run: dict[str, datetime] = {}

    async def update_channel(self, channel_id: str, *, now: datetime | None = None) -> PercentileRunResult:
        now = coerce_datetime(now) if now is not None else utc_now()
        window_start = now - self.recompute_window
        last_run = self._last_run.get(channel_id)
        changed_since = max(last_run, window_start) if last_run else window_start

        if not await self.repository.has_changes_since(channel_id, changed_since):
            return PercentileRunResult(channel_id, skipped=True, reason="no recent changes")

        rows = await self.repository.fetch_ranking_rows(channel_id)
        if not rows:
            return PercentileRunResult(channel_id, skipped=True, reason="no viewers")

        ranks = rank_percentiles(rows)
        updates = [
            ranks[r.viewer_id]
            for r in rows
            if r.updated_at is not None and r.updated_at >= window_start
        ]
        await self.repository.write_percentiles(channel_id, updates)
        self._last_run[channel_id] = now

        logger.info(
            f"Updated percentiles for channel {channel_id}: "
            f"{len(updates)}/{len(rows)} viewer(s)"
        )
        return PercentileRunResult(
            channel_id, skipped=False, population=len(rows), updated=len(updates)
        )

    def reset(self, channel_id: str | None = None) -> None:
        """Forget the last-run marker so the next call re-checks the full window."""
        if channel_id is None:
            self._last_run.clear()
        else:
            self._last_run.pop(channel_id, None)
