"""Watch-stats services."""

from .coordinator import DistributedCoordinator
from .daily_stats import DailyStatWriter
from .heartbeat_buffer import HeartbeatBuffer, HeartbeatResult
from .jobs import ChatActivityIncrementJob, JobResult, LifetimeUpdateJob, RetentionJob
from .lifetime_stats import LifetimeStatsAggregator
from .percentiles import PercentileRankingUpdater
from .sessions import WatchSessionAccumulator, reconstruct_sessions

__all__ = [
    "ChatActivityIncrementJob",
    "DailyStatWriter",
    "DistributedCoordinator",
    "HeartbeatBuffer",
    "HeartbeatResult",
    "JobResult",
    "LifetimeStatsAggregator",
    "LifetimeUpdateJob",
    "PercentileRankingUpdater",
    "RetentionJob",
    "WatchSessionAccumulator",
    "reconstruct_sessions",
]
