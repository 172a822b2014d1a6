"""Database-backed channel leases shared by every worker instance.

Each instance registers itself in ``listener_instances`` and claims channels
in ``channel_listener_locks``.  A claim succeeds when the channel is
unlocked, already ours, or its holder stopped heartbeating more than
``lock_timeout`` seconds ago.  A crashed instance is therefore recovered by
timeout, not by any shutdown hook.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from shared.dates import utc_now
from shared.models.coordination import ChannelListenerLock, ListenerInstance
from shared.repositories.coordination import CoordinationRepository
from watchstats.errors import CoordinatorNotStartedError

logger = logging.getLogger(__name__)


class DistributedCoordinator:
    def __init__(
        self,
        repository: CoordinationRepository,
        instance_id: str,
        *,
        max_channels: int = 80,
        heartbeat_interval: float = 30.0,
        lock_timeout: float = 60.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.instance_id = instance_id
        self.max_channels = max_channels
        self.heartbeat_interval = heartbeat_interval
        self.lock_timeout = lock_timeout
        self._timer = timer

        self._acquired: set[str] = set()
        self._started = False
        self._last_cleanup: float | None = None
        self._task: asyncio.Task | None = None

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, *, run_heartbeat_loop: bool = True) -> None:
        """Register this instance.  Database errors propagate."""
        if self._started:
            return
        logger.info(f"Starting coordinator with instance ID: {self.instance_id}")
        await self.repository.register_instance(self.instance_id, 0)
        self._started = True
        if run_heartbeat_loop:
            self._task = asyncio.create_task(self._heartbeat_loop(), name="coordinator-heartbeat")

    async def stop(self) -> None:
        """Release every lock and deregister; failures are logged, not raised."""
        if not self._started:
            return
        logger.info("Stopping coordinator...")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        try:
            released = await self.repository.release_all(self.instance_id)
            logger.info(f"Released {released} channel lock(s)")
        except Exception as e:
            logger.error(f"Failed to release channel locks on shutdown: {e}")
        try:
            await self.repository.unregister_instance(self.instance_id)
        except Exception as e:
            logger.error(f"Failed to unregister instance {self.instance_id}: {e}")

        self._acquired.clear()
        self._started = False

    def _require_started(self) -> None:
        if not self._started:
            raise CoordinatorNotStartedError(
                f"Coordinator {self.instance_id} is not started; call start() first"
            )

    # ── Locks ────────────────────────────────────────────────────────

    async def try_acquire(self, channel_id: str) -> bool:
        """Claim *channel_id* for this instance.

        True immediately if we already hold it; False when this instance is
        at its channel cap or another live instance holds the lock.
        """
        self._require_started()
        if channel_id in self._acquired:
            return True

        if len(self._acquired) >= self.max_channels:
            logger.warning(
                f"Instance {self.instance_id} reached max channels ({self.max_channels})"
            )
            return False

        try:
            acquired = await self.repository.try_claim(channel_id, self.instance_id, self.lock_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to acquire channel {channel_id}: {type(e).__name__}: {e}")
            return False

        if acquired:
            self._acquired.add(channel_id)
            logger.info(f"Acquired channel: {channel_id} (total: {len(self._acquired)})")
        return acquired

    async def release(self, channel_id: str) -> bool:
        """Drop our lock on *channel_id*; a lock someone else now holds is left alone."""
        self._require_started()
        released = await self.repository.release(channel_id, self.instance_id)
        self._acquired.discard(channel_id)
        logger.info(f"Released channel: {channel_id} (total: {len(self._acquired)})")
        return released

    # ── Heartbeat ────────────────────────────────────────────────────

    async def heartbeat(self) -> None:
        """Refresh our instance row and every lock we hold.

        Locks that were taken over while we were stalled are dropped from the
        local set.  Expired rows are swept at most once per ``lock_timeout``.
        """
        self._require_started()
        await self.repository.heartbeat_instance(self.instance_id, len(self._acquired))

        if self._acquired:
            still_held = await self.repository.refresh_locks(self.instance_id, sorted(self._acquired))
            lost = self._acquired - still_held
            if lost:
                logger.warning(f"Lost {len(lost)} channel lock(s) to other instances: {sorted(lost)}")
                self._acquired &= still_held

        now = self._timer()
        if self._last_cleanup is None or now - self._last_cleanup >= self.lock_timeout:
            locks, instances = await self.repository.delete_expired(self.lock_timeout)
            self._last_cleanup = now
            if locks or instances:
                logger.info(
                    f"Cleaned up {locks} expired channel lock(s) and {instances} instance(s)"
                )

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await self.heartbeat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Coordinator heartbeat failed: {type(e).__name__}: {e}")
            try:
                await asyncio.sleep(self.heartbeat_interval)
            except asyncio.CancelledError:
                break

    # ── Introspection ────────────────────────────────────────────────

    def acquired_channels(self) -> list[str]:
        return sorted(self._acquired)

    async def list_instances(self) -> list[ListenerInstance]:
        return await self.repository.list_instances(now=utc_now(), timeout_seconds=self.lock_timeout)

    async def list_locks(self) -> list[ChannelListenerLock]:
        return await self.repository.list_locks()

    @property
    def is_started(self) -> bool:
        return self._started
