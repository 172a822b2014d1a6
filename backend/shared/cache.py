"""In-process TTL cache shared by the watch-stats services.

Uses cachetools.TTLCache for expiry and capacity-bounded eviction: on
insert, expired entries are purged first, then the least recently used
live entry is evicted if the cache is still full.

Two call sites rely on it:
  * channel name -> channel id resolution (read-through, with a stale
    fallback when the database is unreachable)
  * heartbeat deduplication (presence checks only, no stale store)

Each instance belongs to whoever constructs it; nothing here is shared
across processes.
"""

import asyncio
import functools
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

# Sentinel object to distinguish "not in cache" from cached None values
_MISSING = object()

F = TypeVar("F", bound=Callable[..., Any])


class AsyncTTLCache:
    """Async-aware TTL cache with an optional stale fallback store.

    Two tiers:
      1. ``_cache`` (TTLCache): fresh data, governed by *ttl* and *maxsize*.
      2. ``_stale`` (OrderedDict, LRU, bounded by *maxsize*): last-known-good
         values that survive TTL expiry.  Only kept when *stale* is true and
         only read when the upstream source is unreachable.

    *timer* is forwarded to cachetools so tests can drive expiry with a fake
    clock.
    """

    def __init__(
        self,
        maxsize: int = 128,
        ttl: float = 60.0,
        *,
        stale: bool = True,
        timer: Callable[[], float] = time.monotonic,
    ):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._maxsize = maxsize
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._keep_stale = stale
        self._stale: OrderedDict[str, Any] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    # --- lock management (bounded) ---

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
            # Prune locks whose key is gone from both tiers
            if len(self._locks) > self._maxsize * 2:
                stale_keys = set(self._stale)
                for k in list(self._locks):
                    if k not in stale_keys and k not in self._cache:
                        del self._locks[k]
        return self._locks[key]

    # --- primary (fresh) operations ---

    def get(self, key: str) -> Any:
        """Return fresh value or ``_MISSING``."""
        return self._cache.get(key, _MISSING)

    def contains(self, key: str) -> bool:
        """True if *key* holds an unexpired entry.  Does not touch LRU order."""
        return key in self._cache

    def set(self, key: str, value: Any) -> None:
        """Write to the fresh cache and, if enabled, the stale store."""
        self._cache[key] = value
        if not self._keep_stale:
            return
        self._stale[key] = value
        self._stale.move_to_end(key)
        while len(self._stale) > self._maxsize:
            self._stale.popitem(last=False)

    def add(self, key: str) -> bool:
        """Mark *key* as seen.

        Returns False if an unexpired entry already existed (nothing is
        written in that case), True if the key was newly recorded.
        """
        if key in self._cache:
            return False
        self.set(key, True)
        return True

    def invalidate(self, key: str) -> None:
        """Remove from fresh cache; stale store keeps the value."""
        self._cache.pop(key, None)

    def clear(self) -> None:
        """Clear fresh cache; stale store is preserved."""
        self._cache.clear()

    def expire(self) -> int:
        """Purge expired entries now.  Returns how many were dropped."""
        return len(self._cache.expire())

    # --- stale fallback ---

    def get_stale(self, key: str) -> Any:
        """Return last-known-good value or ``_MISSING``."""
        value = self._stale.get(key, _MISSING)
        if value is not _MISSING:
            self._stale.move_to_end(key)  # refresh LRU position
        return value

    @property
    def size(self) -> int:
        return len(self._cache)

    @property
    def stale_size(self) -> int:
        return len(self._stale)


async def _load_with_retry(
    func: Callable[..., Awaitable[Any]],
    args: tuple,
    kwargs: dict,
    *,
    label: str,
    attempts: int,
    delay: float,
) -> Any:
    """Await ``func(*args, **kwargs)`` up to *attempts* times.

    Waits ``delay * n`` after the n-th failure.  Re-raises the last error.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt == attempts:
                raise
            wait = delay * attempt
            logger.warning(
                f"Lookup {label} failed ({type(exc).__name__}), "
                f"attempt {attempt}/{attempts}, retrying in {wait:.1f}s"
            )
            await asyncio.sleep(wait)
    raise RuntimeError("attempts must be at least 1")


def cached(
    cache: AsyncTTLCache | str,
    key_func: Callable[..., str],
    *,
    retry: int = 3,
    retry_delay: float = 1.0,
):
    """Read-through caching for an async lookup.

    *cache* is either an :class:`AsyncTTLCache` or the name of an attribute on
    the first positional argument holding one, so every repository instance
    can own its cache.  *key_func* receives the call's arguments and returns
    the cache key.

    On a miss the lookup runs under a per-key lock (concurrent misses for the
    same key share one query) with up to *retry* attempts.  If every attempt
    fails, the last-known-good value from the stale store is returned with a
    warning; without one the error propagates.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            store: AsyncTTLCache = getattr(args[0], cache) if isinstance(cache, str) else cache
            key = key_func(*args, **kwargs)

            hit = store.get(key)
            if hit is not _MISSING:
                return hit

            async with store._get_lock(key):
                # Another waiter may have filled it while we queued
                hit = store.get(key)
                if hit is not _MISSING:
                    return hit
                try:
                    value = await _load_with_retry(
                        func, args, kwargs, label=key, attempts=retry, delay=retry_delay
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    stale = store.get_stale(key)
                    if stale is _MISSING:
                        raise
                    logger.warning(f"Serving stale value for {key} ({type(exc).__name__})")
                    return stale
                store.set(key, value)
                return value

        return wrapper  # type: ignore[return-value]

    return decorator
