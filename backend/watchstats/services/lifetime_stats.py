"""Lifetime profile aggregation for one (viewer, channel) pair.

The profile is recomputed from scratch out of the daily stat and message
aggregate rows every time, so a run can be repeated at any moment.  Only the
persistence step looks at the previous row, and only to keep cumulative
totals from going backwards.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from shared.dates import coerce_datetime, day_start, month_key, utc_now
from shared.models.stats import DailyStat, LifetimeStats, MessageDailyAgg
from shared.repositories.lifetime_stats import LifetimeStatsRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakInfo:
    longest: int
    current: int


def compute_streaks(active_dates: Iterable[date], today: date) -> StreakInfo:
    """Longest run of consecutive days, and the run ending at the latest date.

    The current streak only counts when the latest active date is today or
    yesterday.
    """
    days = sorted(set(active_dates))
    if not days:
        return StreakInfo(longest=0, current=0)

    longest = run = 1
    for prev, curr in zip(days, days[1:]):
        run = run + 1 if (curr - prev).days == 1 else 1
        longest = max(longest, run)

    current = run if (today - days[-1]).days <= 1 else 0
    return StreakInfo(longest=longest, current=current)


def count_active_since(active_dates: Iterable[date], now: datetime, days: int) -> int:
    """Active dates whose UTC midnight is within the last *days* days of *now*."""
    cutoff = now - timedelta(days=days)
    return sum(1 for d in set(active_dates) if day_start(d) >= cutoff)


def most_active_month(active_dates: Iterable[date]) -> tuple[str | None, int]:
    """``(YYYY-MM, count)`` with the most active dates; ties go to the later month."""
    counts = Counter(month_key(d) for d in set(active_dates))
    if not counts:
        return None, 0
    month, count = max(counts.items(), key=lambda item: (item[1], item[0]))
    return month, count


def compute_lifetime_stats(
    viewer_id: str,
    channel_id: str,
    daily_rows: Sequence[DailyStat],
    message_rows: Sequence[MessageDailyAgg],
    *,
    now: datetime,
) -> LifetimeStats:
    """Build the full profile from the pair's input rows.  Pure."""
    now = coerce_datetime(now)

    total_seconds = sum(r.watch_seconds for r in daily_rows)
    total_minutes = total_seconds // 60
    total_sessions = len(daily_rows)
    avg_minutes = total_minutes // total_sessions if total_sessions > 0 else 0

    daily_dates = [r.date for r in daily_rows]
    first_watched = day_start(min(daily_dates)) if daily_dates else None
    last_watched = day_start(max(daily_dates)) if daily_dates else None

    active_dates = set(daily_dates) | {r.date for r in message_rows}
    streaks = compute_streaks(active_dates, now.date())
    month, month_count = most_active_month(active_dates)

    return LifetimeStats(
        viewer_id=viewer_id,
        channel_id=channel_id,
        total_watch_time_minutes=total_minutes,
        total_sessions=total_sessions,
        avg_session_minutes=avg_minutes,
        first_watched_at=first_watched,
        last_watched_at=last_watched,
        total_messages=sum(r.total_messages for r in message_rows),
        total_chat_messages=sum(r.chat_messages for r in message_rows),
        total_subscriptions=sum(r.subscriptions for r in message_rows),
        total_cheers=sum(r.cheers for r in message_rows),
        total_bits=sum(r.total_bits for r in message_rows),
        tracking_started_at=day_start(min(active_dates)) if active_dates else now,
        tracking_days=len(active_dates),
        longest_streak_days=streaks.longest,
        current_streak_days=streaks.current,
        active_days_last_30=count_active_since(active_dates, now, 30),
        active_days_last_90=count_active_since(active_dates, now, 90),
        most_active_month=month,
        most_active_month_count=month_count,
    )


class LifetimeStatsAggregator:
    """Recompute and persist one pair's lifetime row.

    Errors propagate: the caller (a scheduled job, the reconciliation CLI)
    decides whether to retry.
    """

    def __init__(self, repository: LifetimeStatsRepository) -> None:
        self.repository = repository

    async def aggregate(
        self,
        viewer_id: str,
        channel_id: str,
        *,
        allow_decrease: bool = False,
        now: datetime | None = None,
    ) -> LifetimeStats:
        daily_rows = await self.repository.fetch_daily_rows(viewer_id, channel_id)
        message_rows = await self.repository.fetch_message_rows(viewer_id, channel_id)

        stats = compute_lifetime_stats(
            viewer_id, channel_id, daily_rows, message_rows, now=now or utc_now()
        )
        saved = await self.repository.save(stats, prevent_decrease=not allow_decrease)

        logger.debug(
            f"Aggregated lifetime stats for viewer {viewer_id} channel {channel_id}: "
            f"{saved.total_watch_time_minutes} min, {saved.tracking_days} day(s)"
        )
        return saved
