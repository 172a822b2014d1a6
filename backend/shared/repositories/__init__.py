"""SQL repositories for the watch-stats tables."""

from .base import BaseRepository
from .channel import ChannelRepository
from .coordination import CoordinationRepository
from .daily_stats import DailyStatsRepository, MessageRepository
from .heartbeat_dedup import HeartbeatDedupRepository
from .lifetime_stats import LifetimeStatsRepository

__all__ = [
    "BaseRepository",
    "ChannelRepository",
    "CoordinationRepository",
    "DailyStatsRepository",
    "HeartbeatDedupRepository",
    "LifetimeStatsRepository",
    "MessageRepository",
]
