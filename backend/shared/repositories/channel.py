"""Repository for the channels table."""

from __future__ import annotations

import logging

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class ChannelRepository(BaseRepository):
    """Channel lookups.

    ``resolve_channel_id`` sits on the heartbeat hot path, so it is a
    read-through cache: one query per channel name per TTL window.  Unknown
    names are cached as ``None`` too, which keeps untracked channels from
    costing a query per heartbeat.
    """

    def __init__(self, pool: asyncpg.Pool, *, cache_ttl: float = 300.0, cache_size: int = 1024) -> None:
        super().__init__(pool)
        self._channel_id_cache = AsyncTTLCache(maxsize=cache_size, ttl=cache_ttl)

    @cached(
        cache="_channel_id_cache",
        key_func=lambda self, channel_name: f"channel_id:{channel_name.strip().lower()}",
        retry=2,
    )
    async def resolve_channel_id(self, channel_name: str) -> str | None:
        """Map a channel login name to its id, or ``None`` if not tracked."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT channel_id FROM channels "
                "WHERE LOWER(channel_name) = $1 AND enabled = TRUE",
                channel_name.strip().lower(),
            )

    def invalidate(self, channel_name: str) -> None:
        self._channel_id_cache.invalidate(f"channel_id:{channel_name.strip().lower()}")

    async def count_live_channels(self) -> int:
        async with self.pool.acquire() as conn:
            return int(
                await conn.fetchval(
                    "SELECT COUNT(*) FROM channels WHERE is_live = TRUE AND enabled = TRUE"
                )
                or 0
            )
