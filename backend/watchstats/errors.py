"""Exception types raised by the watch-stats services."""


class WatchStatsError(Exception):
    """Base class for errors raised by this package."""


class CoordinatorNotStartedError(WatchStatsError):
    """A lock operation was attempted before ``DistributedCoordinator.start()``."""
