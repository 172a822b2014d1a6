"""Common plumbing for the SQL repositories."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg


class BaseRepository:
    """Holds the pool and lets callers thread an open connection through.

    Methods that may run inside a caller-owned transaction take an optional
    ``conn``; without one they borrow a connection from the pool for the
    duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @asynccontextmanager
    async def connection(
        self, conn: asyncpg.Connection | None = None
    ) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as acquired:
            yield acquired


def affected_rows(status: str | None) -> int:
    """Row count from an asyncpg command status such as ``'INSERT 0 5'``."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0
