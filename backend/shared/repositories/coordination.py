"""Repository for listener instances and per-channel listener locks.

All timestamps are taken from the database clock (``NOW()``) so instances
with skewed local clocks still agree on which leases have expired.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from shared.models.coordination import ChannelListenerLock, ListenerInstance
from shared.repositories.base import BaseRepository, affected_rows

logger = logging.getLogger(__name__)


class CoordinationRepository(BaseRepository):
    """SQL for the lease tables."""

    # ── Instances ────────────────────────────────────────────────────

    async def register_instance(self, instance_id: str, channel_count: int = 0) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO listener_instances (instance_id, channel_count, last_heartbeat, started_at)
                VALUES ($1, $2, NOW(), NOW())
                ON CONFLICT (instance_id) DO UPDATE SET
                    channel_count  = EXCLUDED.channel_count,
                    last_heartbeat = NOW()
                """,
                instance_id,
                channel_count,
            )

    async def heartbeat_instance(self, instance_id: str, channel_count: int) -> None:
        # Upsert so an instance swept during a long pause re-registers itself
        await self.register_instance(instance_id, channel_count)

    async def unregister_instance(self, instance_id: str) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM listener_instances WHERE instance_id = $1", instance_id
            )
        return affected_rows(status) > 0

    async def list_instances(self, *, now: datetime, timeout_seconds: float) -> list[ListenerInstance]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT instance_id, channel_count, last_heartbeat, started_at "
                "FROM listener_instances ORDER BY instance_id"
            )
            return [
                ListenerInstance.from_row(r, now=now, timeout_seconds=timeout_seconds) for r in rows
            ]

    # ── Locks ────────────────────────────────────────────────────────

    async def try_claim(self, channel_id: str, instance_id: str, timeout_seconds: float) -> bool:
        """Atomically create the lock, or take it over if ours or expired.

        One statement: concurrent claimants serialize on the primary key and
        the ``WHERE`` on the conflict branch decides the winner.
        """
        async with self.pool.acquire() as conn:
            owner = await conn.fetchval(
                """
                INSERT INTO channel_listener_locks AS l
                    (channel_id, instance_id, last_heartbeat, acquired_at)
                VALUES ($1, $2, NOW(), NOW())
                ON CONFLICT (channel_id) DO UPDATE SET
                    instance_id    = EXCLUDED.instance_id,
                    last_heartbeat = EXCLUDED.last_heartbeat,
                    acquired_at    = EXCLUDED.acquired_at
                WHERE l.instance_id = EXCLUDED.instance_id
                   OR l.last_heartbeat < NOW() - make_interval(secs => $3)
                RETURNING instance_id
                """,
                channel_id,
                instance_id,
                float(timeout_seconds),
            )
        return owner == instance_id

    async def refresh_locks(self, instance_id: str, channel_ids: Sequence[str]) -> set[str]:
        """Bump ``last_heartbeat`` on locks we still own.  Returns those channel ids."""
        if not channel_ids:
            return set()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE channel_listener_locks
                SET last_heartbeat = NOW()
                WHERE instance_id = $1 AND channel_id = ANY($2::text[])
                RETURNING channel_id
                """,
                instance_id,
                list(channel_ids),
            )
        return {r["channel_id"] for r in rows}

    async def release(self, channel_id: str, instance_id: str) -> bool:
        """Delete the lock only if *instance_id* still owns it."""
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM channel_listener_locks WHERE channel_id = $1 AND instance_id = $2",
                channel_id,
                instance_id,
            )
        return affected_rows(status) > 0

    async def release_all(self, instance_id: str) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM channel_listener_locks WHERE instance_id = $1", instance_id
            )
        return affected_rows(status)

    async def delete_expired(self, timeout_seconds: float) -> tuple[int, int]:
        """Sweep locks and instances whose heartbeat is older than the timeout.

        Returns ``(locks_deleted, instances_deleted)``.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                locks = await conn.execute(
                    "DELETE FROM channel_listener_locks "
                    "WHERE last_heartbeat < NOW() - make_interval(secs => $1)",
                    float(timeout_seconds),
                )
                instances = await conn.execute(
                    "DELETE FROM listener_instances "
                    "WHERE last_heartbeat < NOW() - make_interval(secs => $1)",
                    float(timeout_seconds),
                )
        return affected_rows(locks), affected_rows(instances)

    async def list_locks(self) -> list[ChannelListenerLock]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT channel_id, instance_id, last_heartbeat, acquired_at "
                "FROM channel_listener_locks ORDER BY channel_id"
            )
            return [ChannelListenerLock.from_row(r) for r in rows]
