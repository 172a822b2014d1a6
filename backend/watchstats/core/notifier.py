"""Downstream cache-invalidation notifications over PostgreSQL NOTIFY."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Protocol

import asyncpg

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify_viewers(self, viewer_ids: Iterable[str]) -> None: ...


class PgNotifySink:
    """Publish one ``{"viewer_id": ...}`` payload per viewer on a NOTIFY channel.

    Listeners (the API process) drop their per-viewer channel-list cache on
    receipt.  Delivery is fire-and-forget: a failure is logged and never
    reaches the caller.
    """

    def __init__(self, pool: asyncpg.Pool, channel: str = "viewer_cache_invalidate") -> None:
        self.pool = pool
        self.channel = channel

    async def notify_viewers(self, viewer_ids: Iterable[str]) -> None:
        unique = sorted(set(viewer_ids))
        if not unique:
            return
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    SELECT pg_notify($1, json_build_object('viewer_id', v)::text)
                    FROM UNNEST($2::text[]) AS v
                    """,
                    self.channel,
                    unique,
                )
            logger.debug(f"Notified '{self.channel}' for {len(unique)} viewer(s)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Viewer cache notification failed: {type(e).__name__}: {e}")


class NullSink:
    """Sink that drops every notification (CLI runs, tests)."""

    async def notify_viewers(self, viewer_ids: Iterable[str]) -> None:
        return None
