from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock

from shared.cache import _MISSING, AsyncTTLCache, cached


class TestAsyncTTLCache:
    """Expiry and eviction, driven by a fake clock."""

    def test_rejects_non_positive_limits(self):
        with pytest.raises(ValueError):
            AsyncTTLCache(maxsize=0)
        with pytest.raises(ValueError):
            AsyncTTLCache(ttl=0)

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = AsyncTTLCache(maxsize=10, ttl=60, timer=clock)

        cache.set("k", "v")
        clock.advance(59)
        assert cache.get("k") == "v"
        clock.advance(2)
        assert cache.get("k") is _MISSING

    def test_add_reports_presence(self):
        clock = FakeClock()
        cache = AsyncTTLCache(maxsize=10, ttl=60, stale=False, timer=clock)

        assert cache.add("k") is True
        assert cache.add("k") is False
        clock.advance(61)
        assert cache.add("k") is True

    def test_expired_entries_are_evicted_before_live_ones(self):
        clock = FakeClock()
        cache = AsyncTTLCache(maxsize=2, ttl=100, stale=False, timer=clock)

        cache.add("old")
        clock.advance(50)
        cache.add("live")
        clock.advance(60)  # "old" expired, "live" still valid
        cache.add("new")

        assert cache.contains("live")
        assert cache.contains("new")
        assert not cache.contains("old")

    def test_oldest_live_entry_evicted_when_full(self):
        cache = AsyncTTLCache(maxsize=2, ttl=100, stale=False, timer=FakeClock())

        cache.add("a")
        cache.add("b")
        cache.add("c")

        assert not cache.contains("a")
        assert cache.contains("b")
        assert cache.contains("c")
        assert cache.size == 2

    def test_expire_purges_and_counts(self):
        clock = FakeClock()
        cache = AsyncTTLCache(maxsize=10, ttl=10, stale=False, timer=clock)
        for key in ("a", "b", "c"):
            cache.add(key)
        clock.advance(11)

        assert cache.expire() == 3
        assert cache.size == 0

    def test_stale_store_survives_expiry(self):
        clock = FakeClock()
        cache = AsyncTTLCache(maxsize=10, ttl=10, timer=clock)
        cache.set("k", 1)
        clock.advance(11)

        assert cache.get("k") is _MISSING
        assert cache.get_stale("k") == 1

    def test_stale_disabled_keeps_nothing(self):
        cache = AsyncTTLCache(maxsize=10, ttl=10, stale=False)
        cache.set("k", 1)
        assert cache.stale_size == 0


class _Lookup:
    def __init__(self, loader):
        self._cache = AsyncTTLCache(maxsize=10, ttl=60, timer=FakeClock())
        self.loader = loader

    @cached(cache="_cache", key_func=lambda self, name: f"id:{name}", retry=2, retry_delay=0)
    async def resolve(self, name):
        return await self.loader(name)


class TestCachedDecorator:
    """Read-through behaviour of ``@cached``."""

    @pytest.mark.asyncio
    async def test_second_call_hits_cache(self):
        loader = AsyncMock(return_value="42")
        lookup = _Lookup(loader)

        assert await lookup.resolve("foo") == "42"
        assert await lookup.resolve("foo") == "42"
        loader.assert_awaited_once_with("foo")

    @pytest.mark.asyncio
    async def test_none_results_are_cached(self):
        loader = AsyncMock(return_value=None)
        lookup = _Lookup(loader)

        assert await lookup.resolve("ghost") is None
        assert await lookup.resolve("ghost") is None
        assert loader.await_count == 1

    @pytest.mark.asyncio
    async def test_caches_are_per_instance(self):
        first = _Lookup(AsyncMock(return_value="1"))
        second = _Lookup(AsyncMock(return_value="2"))

        assert await first.resolve("x") == "1"
        assert await second.resolve("x") == "2"

    @pytest.mark.asyncio
    async def test_falls_back_to_stale_value_on_failure(self):
        loader = AsyncMock(return_value="42")
        lookup = _Lookup(loader)
        await lookup.resolve("foo")

        lookup._cache.clear()
        loader.side_effect = ConnectionError("db down")

        assert await lookup.resolve("foo") == "42"
        assert loader.await_count == 3  # 1 success + 2 failed retries

    @pytest.mark.asyncio
    async def test_raises_without_stale_value(self):
        lookup = _Lookup(AsyncMock(side_effect=ConnectionError("db down")))

        with pytest.raises(ConnectionError):
            await lookup.resolve("foo")
