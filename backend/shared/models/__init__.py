"""Shared data models for the watch-stats backend."""

from .coordination import ChannelListenerLock, ListenerInstance
from .stats import (
    SOURCE_CHAT,
    SOURCE_EXTENSION,
    DailyStat,
    DailyStatDelta,
    HeartbeatBufferEntry,
    LifetimeStats,
    MessageDailyAgg,
    PercentileUpdate,
    RankingRow,
)

__all__ = [
    "SOURCE_CHAT",
    "SOURCE_EXTENSION",
    "ChannelListenerLock",
    "DailyStat",
    "DailyStatDelta",
    "HeartbeatBufferEntry",
    "LifetimeStats",
    "ListenerInstance",
    "MessageDailyAgg",
    "PercentileUpdate",
    "RankingRow",
]
