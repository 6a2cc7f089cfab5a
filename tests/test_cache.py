"""Unit tests for docvault.engine.cache — TTLCache, CacheManager."""

import asyncio
import pytest

from docvault.engine.cache import CacheEntry, CacheManager, CacheScope, TTLCache, system_clock
from docvault.engine.config import CacheConfig, CacheTTLConfig


class Counter:
    """compute() stand-in that blocks on an Event and counts invocations."""

    def __init__(self, value="computed", error=None):
        self.value = value
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.value


class TestTTLCacheBasics:
    def test_get_missing_returns_none(self, clock):
        cache = TTLCache("t", 1000, clock)
        assert cache.get("nope") is None

    def test_set_then_get(self, clock):
        cache = TTLCache("t", 1000, clock)
        cache.set("k", [1, 2])
        assert cache.get("k") == [1, 2]
        assert len(cache) == 1

    def test_expiry_boundary(self, clock):
        cache = TTLCache("documents", 300_000, clock)
        cache.set("emp-1", "rows")
        clock.advance(299_999)
        assert cache.get("emp-1") == "rows"
        clock.advance(2)
        assert cache.get("emp-1") is None

    def test_exactly_ttl_is_expired(self, clock):
        cache = TTLCache("t", 1000, clock)
        cache.set("k", "v")
        clock.advance(1000)
        assert cache.get("k") is None

    def test_peek_ignores_age(self, clock):
        cache = TTLCache("t", 1000, clock)
        cache.set("k", "old")
        clock.advance(10_000)
        entry = cache.peek("k")
        assert isinstance(entry, CacheEntry)
        assert entry.value == "old"
        assert cache.get("k") is None

    def test_set_with_timestamp_keeps_age(self, clock):
        cache = TTLCache("t", 1000, clock)
        clock.advance(5_000)
        cache.set("k", "copied", timestamp=clock() - 900)
        assert cache.get("k") == "copied"
        clock.advance(100)
        assert cache.get("k") is None

    def test_invalidate_single_key(self, clock):
        cache = TTLCache("t", 1000, clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.invalidate("a") == 1
        assert cache.get("a") is None
        assert cache.get("b") == 2

    def test_invalidate_missing_key(self, clock):
        cache = TTLCache("t", 1000, clock)
        assert cache.invalidate("ghost") == 0

    def test_invalidate_all(self, clock):
        cache = TTLCache("t", 1000, clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_system_clock_is_epoch_millis(self):
        assert system_clock() > 1_600_000_000_000


class TestGetOrCompute:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_compute(self, clock):
        cache = TTLCache("companies", 900_000, clock)
        compute = Counter(["folder"])

        waiters = [asyncio.create_task(cache.get_or_compute("all", compute)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.is_inflight("all")
        compute.release.set()
        results = await asyncio.gather(*waiters)

        assert compute.calls == 1
        assert all(r == ["folder"] for r in results)
        assert cache.stats()["coalesced"] == 4
        assert not cache.is_inflight("all")

    @pytest.mark.asyncio
    async def test_hit_skips_compute(self, clock):
        cache = TTLCache("t", 1000, clock)
        compute = Counter()
        compute.release.set()
        await cache.get_or_compute("k", compute)
        await cache.get_or_compute("k", compute)
        assert compute.calls == 1
        assert cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_compute_that_stores_its_own_entry_keeps_it(self, clock):
        cache = TTLCache("t", 1000, clock)
        clock.advance(5_000)

        async def inherit():
            cache.set("k", "inherited", timestamp=clock() - 800)
            return "inherited"

        assert await cache.get_or_compute("k", inherit) == "inherited"
        assert cache.peek("k").timestamp == clock() - 800

    @pytest.mark.asyncio
    async def test_expired_entry_recomputes(self, clock):
        cache = TTLCache("t", 300_000, clock)
        compute = Counter()
        compute.release.set()
        await cache.get_or_compute("k", compute)
        clock.advance(300_001)
        await cache.get_or_compute("k", compute)
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self, clock):
        cache = TTLCache("t", 1000, clock)
        failing = Counter(error=RuntimeError("db down"))

        waiters = [asyncio.create_task(cache.get_or_compute("k", failing)) for _ in range(3)]
        await asyncio.sleep(0)
        failing.release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert failing.calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert cache.peek("k") is None
        assert not cache.is_inflight("k")

        ok = Counter("recovered")
        ok.release.set()
        assert await cache.get_or_compute("k", ok) == "recovered"
        assert ok.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_during_compute_discards_result(self, clock):
        cache = TTLCache("t", 1000, clock)
        compute = Counter("stale")

        first = asyncio.create_task(cache.get_or_compute("k", compute))
        await asyncio.sleep(0)
        cache.invalidate("k")
        assert not cache.is_inflight("k")

        compute.release.set()
        assert await first == "stale"
        assert cache.get("k") is None

    @pytest.mark.asyncio
    async def test_call_after_invalidate_starts_fresh_compute(self, clock):
        cache = TTLCache("t", 1000, clock)
        old = Counter("old")
        new = Counter("new")

        first = asyncio.create_task(cache.get_or_compute("k", old))
        await asyncio.sleep(0)
        cache.invalidate("k")
        second = asyncio.create_task(cache.get_or_compute("k", new))
        await asyncio.sleep(0)

        new.release.set()
        assert await second == "new"
        old.release.set()
        assert await first == "old"
        # the older compute finishing last must not overwrite the newer value
        assert cache.get("k") == "new"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_compute(self, clock):
        cache = TTLCache("t", 1000, clock)
        compute = Counter("value")

        cancelled = asyncio.create_task(cache.get_or_compute("k", compute))
        survivor = asyncio.create_task(cache.get_or_compute("k", compute))
        await asyncio.sleep(0)
        cancelled.cancel()
        await asyncio.sleep(0)
        compute.release.set()

        assert await survivor == "value"
        with pytest.raises(asyncio.CancelledError):
            await cancelled
        assert compute.calls == 1
        assert cache.get("k") == "value"

    @pytest.mark.asyncio
    async def test_different_keys_compute_independently(self, clock):
        cache = TTLCache("t", 1000, clock)
        a, b = Counter("a"), Counter("b")
        a.release.set()
        b.release.set()
        assert await asyncio.gather(cache.get_or_compute("a", a), cache.get_or_compute("b", b)) == ["a", "b"]
        assert a.calls == b.calls == 1

    @pytest.mark.asyncio
    async def test_clear_resets_stats(self, clock):
        cache = TTLCache("t", 1000, clock)
        compute = Counter()
        compute.release.set()
        await cache.get_or_compute("k", compute)
        cache.clear()
        stats = cache.stats()
        assert stats["entries"] == 0
        assert stats["misses"] == 0


class TestCacheManager:
    def test_default_ttls(self, clock):
        caches = CacheManager(clock=clock)
        assert caches.cache(CacheScope.COMPANIES).ttl_ms == 15 * 60 * 1000
        assert caches.cache(CacheScope.EMPLOYEES).ttl_ms == 10 * 60 * 1000
        assert caches.cache(CacheScope.COMPANY_ROWS).ttl_ms == 5 * 60 * 1000
        assert caches.cache(CacheScope.DOCUMENTS).ttl_ms == 5 * 60 * 1000
        assert caches.cache(CacheScope.PRESIGNED).ttl_ms == 10 * 60 * 1000

    def test_configured_ttls(self, clock):
        caches = CacheManager(CacheConfig(ttl=CacheTTLConfig(companies=60)), clock=clock)
        assert caches.cache("companies").ttl_ms == 60_000

    def test_scope_by_string(self, caches):
        assert caches.cache("presigned") is caches.cache(CacheScope.PRESIGNED)

    def test_unknown_scope_raises(self, caches):
        with pytest.raises(ValueError):
            caches.cache("nope")

    def test_invalidate_is_scoped(self, caches):
        caches.cache(CacheScope.EMPLOYEES).set("GOLDEN CUBS", ["x"])
        caches.cache(CacheScope.EMPLOYEES).set("CUBS", ["y"])
        caches.cache(CacheScope.DOCUMENTS).set("GOLDEN CUBS", ["z"])

        assert caches.invalidate(CacheScope.EMPLOYEES, "GOLDEN CUBS") == 1
        assert caches.cache(CacheScope.EMPLOYEES).get("GOLDEN CUBS") is None
        assert caches.cache(CacheScope.EMPLOYEES).get("CUBS") == ["y"]
        assert caches.cache(CacheScope.DOCUMENTS).get("GOLDEN CUBS") == ["z"]

    def test_clear_every_scope(self, caches):
        for scope in CacheScope:
            caches.cache(scope).set("k", 1)
        caches.clear()
        assert all(s["entries"] == 0 for s in caches.stats().values())

    def test_stats_keys(self, caches):
        assert set(caches.stats()) == {s.value for s in CacheScope}

    def test_clock_shared_with_caches(self, caches, clock):
        assert caches.clock is clock
