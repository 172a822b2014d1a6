"""Data models for the daily, message-aggregate and lifetime stats tables."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, ClassVar

from shared.dates import coerce_date, coerce_datetime

SOURCE_CHAT = "chat"
SOURCE_EXTENSION = "extension"


def _opt_datetime(value: Any) -> datetime | None:
    return coerce_datetime(value) if value is not None else None


@dataclass
class DailyStat:
    """Per viewer, channel and UTC day watch/message counters."""

    viewer_id: str
    channel_id: str
    date: date
    watch_seconds: int = 0
    message_count: int = 0
    emote_count: int = 0
    source: str = SOURCE_CHAT
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> DailyStat:
        return cls(
            viewer_id=row["viewer_id"],
            channel_id=row["channel_id"],
            date=coerce_date(row["date"]),
            watch_seconds=int(row.get("watch_seconds") or 0),
            message_count=int(row.get("message_count") or 0),
            emote_count=int(row.get("emote_count") or 0),
            source=row.get("source") or SOURCE_CHAT,
            created_at=_opt_datetime(row.get("created_at")),
            updated_at=_opt_datetime(row.get("updated_at")),
        )


@dataclass
class MessageDailyAgg:
    """Per viewer, channel and UTC day message-type counters."""

    viewer_id: str
    channel_id: str
    date: date
    total_messages: int = 0
    chat_messages: int = 0
    subscriptions: int = 0
    cheers: int = 0
    gift_subs: int = 0
    raids: int = 0
    total_bits: int = 0
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MessageDailyAgg:
        return cls(
            viewer_id=row["viewer_id"],
            channel_id=row["channel_id"],
            date=coerce_date(row["date"]),
            total_messages=int(row.get("total_messages") or 0),
            chat_messages=int(row.get("chat_messages") or 0),
            subscriptions=int(row.get("subscriptions") or 0),
            cheers=int(row.get("cheers") or 0),
            gift_subs=int(row.get("gift_subs") or 0),
            raids=int(row.get("raids") or 0),
            # total_bits is nullable in older rows
            total_bits=int(row.get("total_bits") or 0),
            updated_at=_opt_datetime(row.get("updated_at")),
        )


@dataclass
class DailyStatDelta:
    """An additive change to one daily stat row."""

    viewer_id: str
    channel_id: str
    date: date
    watch_seconds: int = 0
    message_count: int = 0
    emote_count: int = 0
    last_watched_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.viewer_id, self.channel_id, self.date)


@dataclass
class HeartbeatBufferEntry:
    """A deduplicated heartbeat waiting in memory for the next flush."""

    dedup_key: str
    viewer_id: str
    channel_id: str
    heartbeat_at: datetime
    duration_seconds: int
    watch_seconds: int = 0
    last_watched_at: datetime | None = None

    @staticmethod
    def make_key(viewer_id: str, channel_id: str, heartbeat_at: datetime, duration_seconds: int) -> str:
        return f"{viewer_id}:{channel_id}:{coerce_datetime(heartbeat_at).isoformat()}:{duration_seconds}"

    @property
    def date(self) -> date:
        return coerce_date(self.heartbeat_at)

    def absorb(self, other: HeartbeatBufferEntry) -> None:
        """Fold a later submission with the same key into this entry."""
        self.watch_seconds += other.watch_seconds
        if self.last_watched_at is None or (
            other.last_watched_at is not None and other.last_watched_at > self.last_watched_at
        ):
            self.last_watched_at = other.last_watched_at


@dataclass
class LifetimeStats:
    """All-time engagement profile for one viewer on one channel."""

    # Cumulative totals: never lowered unless a caller explicitly allows it
    MONOTONIC_FIELDS: ClassVar[tuple[str, ...]] = (
        "total_watch_time_minutes",
        "total_sessions",
        "total_messages",
        "total_chat_messages",
        "total_subscriptions",
        "total_cheers",
        "total_bits",
    )

    viewer_id: str
    channel_id: str
    total_watch_time_minutes: int = 0
    total_sessions: int = 0
    avg_session_minutes: int = 0
    first_watched_at: datetime | None = None
    last_watched_at: datetime | None = None
    total_messages: int = 0
    total_chat_messages: int = 0
    total_subscriptions: int = 0
    total_cheers: int = 0
    total_bits: int = 0
    tracking_started_at: datetime | None = None
    tracking_days: int = 0
    longest_streak_days: int = 0
    current_streak_days: int = 0
    active_days_last_30: int = 0
    active_days_last_90: int = 0
    most_active_month: str | None = None
    most_active_month_count: int = 0
    watch_time_percentile: float | None = None
    message_percentile: float | None = None
    updated_at: datetime | None = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LifetimeStats:
        percentile_w = row.get("watch_time_percentile")
        percentile_m = row.get("message_percentile")
        return cls(
            viewer_id=row["viewer_id"],
            channel_id=row["channel_id"],
            total_watch_time_minutes=int(row.get("total_watch_time_minutes") or 0),
            total_sessions=int(row.get("total_sessions") or 0),
            avg_session_minutes=int(row.get("avg_session_minutes") or 0),
            first_watched_at=_opt_datetime(row.get("first_watched_at")),
            last_watched_at=_opt_datetime(row.get("last_watched_at")),
            total_messages=int(row.get("total_messages") or 0),
            total_chat_messages=int(row.get("total_chat_messages") or 0),
            total_subscriptions=int(row.get("total_subscriptions") or 0),
            total_cheers=int(row.get("total_cheers") or 0),
            total_bits=int(row.get("total_bits") or 0),
            tracking_started_at=_opt_datetime(row.get("tracking_started_at")),
            tracking_days=int(row.get("tracking_days") or 0),
            longest_streak_days=int(row.get("longest_streak_days") or 0),
            current_streak_days=int(row.get("current_streak_days") or 0),
            active_days_last_30=int(row.get("active_days_last_30") or 0),
            active_days_last_90=int(row.get("active_days_last_90") or 0),
            most_active_month=row.get("most_active_month"),
            most_active_month_count=int(row.get("most_active_month_count") or 0),
            watch_time_percentile=float(percentile_w) if percentile_w is not None else None,
            message_percentile=float(percentile_m) if percentile_m is not None else None,
            updated_at=_opt_datetime(row.get("updated_at")),
        )

    def guarded_against(self, previous: LifetimeStats | None) -> LifetimeStats:
        """Merge with the persisted row so cumulative totals never go down.

        Monotonic fields take the larger value, ``first_watched_at`` the
        earlier and ``last_watched_at`` the later timestamp.  Everything else
        (averages, streaks, activity windows) is a point-in-time fact and is
        taken from ``self`` unchanged.
        """
        if previous is None:
            return replace(self)

        merged = replace(self)
        for name in self.MONOTONIC_FIELDS:
            setattr(merged, name, max(getattr(self, name), getattr(previous, name)))
        merged.first_watched_at = _earliest(self.first_watched_at, previous.first_watched_at)
        merged.last_watched_at = _latest(self.last_watched_at, previous.last_watched_at)
        return merged


def _earliest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return min(a, b)


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return max(a, b)


@dataclass
class RankingRow:
    """Input row for percentile ranking within one channel."""

    viewer_id: str
    total_watch_time_minutes: int
    total_messages: int
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RankingRow:
        return cls(
            viewer_id=row["viewer_id"],
            total_watch_time_minutes=int(row.get("total_watch_time_minutes") or 0),
            total_messages=int(row.get("total_messages") or 0),
            updated_at=_opt_datetime(row.get("updated_at")),
        )


@dataclass
class PercentileUpdate:
    viewer_id: str
    watch_time_percentile: float
    message_percentile: float
