"""
Tests for the notification deduplication cache and its evictor.
"""
import asyncio
import pytest

from core.dispatcher import CacheEvictor
from core.notification_cache import NotificationCache
from models.schemas import NotificationKey, Transition


def key(subscriber="U1", number="1234", transition=Transition.NEAR):
    return NotificationKey(subscriber, number, transition)


class TestShouldFire:
    @pytest.mark.asyncio
    async def test_first_call_fires(self, cache):
        assert await cache.should_fire(key()) is True
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_repeat_within_window_suppressed(self, cache, clock):
        assert await cache.should_fire(key()) is True
        clock.advance(1799)
        assert await cache.should_fire(key()) is False

    @pytest.mark.asyncio
    async def test_fires_again_after_window_and_eviction(self, cache, clock):
        assert await cache.should_fire(key()) is True
        clock.advance(1800)
        assert await cache.evict_expired() == 1
        assert len(cache) == 0
        assert await cache.should_fire(key()) is True

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, cache):
        assert await cache.should_fire(key(transition=Transition.NEAR)) is True
        assert await cache.should_fire(key(transition=Transition.CURRENT)) is True
        assert await cache.should_fire(key(number="1235")) is True
        assert await cache.should_fire(key(subscriber="U2")) is True
        assert len(cache) == 4

    @pytest.mark.asyncio
    async def test_concurrent_calls_fire_once(self, cache):
        results = await asyncio.gather(*(cache.should_fire(key()) for _ in range(50)))
        assert results.count(True) == 1


class TestReservation:
    @pytest.mark.asyncio
    async def test_reserve_blocks_second_reserve(self, cache):
        assert await cache.reserve(key()) is True
        assert await cache.reserve(key()) is False
        assert await cache.should_fire(key()) is False

    @pytest.mark.asyncio
    async def test_confirm_records(self, cache):
        await cache.reserve(key())
        await cache.confirm(key())
        assert cache.has(key())
        assert await cache.reserve(key()) is False
        assert cache.stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_release_leaves_no_record(self, cache):
        await cache.reserve(key())
        await cache.release(key())
        assert not cache.has(key())
        assert len(cache) == 0
        assert await cache.reserve(key()) is True

    @pytest.mark.asyncio
    async def test_eviction_skips_in_flight(self, cache, clock):
        await cache.should_fire(key())
        clock.advance(1900)
        # Expired record re-reserved for a fresh delivery
        assert await cache.reserve(key()) is True
        assert await cache.evict_expired() == 0
        await cache.confirm(key())
        assert cache.has(key())

    @pytest.mark.asyncio
    async def test_eviction_keeps_fresh_records(self, cache, clock):
        await cache.should_fire(key(number="1001"))
        clock.advance(1000)
        await cache.should_fire(key(number="1002"))
        clock.advance(900)
        assert await cache.evict_expired() == 1
        assert not cache.has(key(number="1001"))
        assert cache.has(key(number="1002"))

    @pytest.mark.asyncio
    async def test_evict_with_explicit_now(self, cache, clock):
        await cache.should_fire(key())
        assert await cache.evict_expired(now=clock.now + 10) == 0
        assert await cache.evict_expired(now=clock.now + 1800) == 1

    @pytest.mark.asyncio
    async def test_clear_and_stats(self, cache):
        await cache.should_fire(key())
        await cache.reserve(key(number="2000"))
        stats = cache.stats()
        assert stats["records"] == 1
        assert stats["in_flight"] == 1
        assert stats["retention_seconds"] == 1800
        await cache.clear()
        assert cache.stats()["records"] == 0
        assert cache.stats()["in_flight"] == 0

    def test_default_retention_is_thirty_minutes(self):
        assert NotificationCache().retention_seconds == 30 * 60


class TestCacheEvictor:
    @pytest.mark.asyncio
    async def test_periodic_eviction(self, cache, clock):
        await cache.should_fire(key())
        clock.advance(3600)
        evictor = CacheEvictor(cache, interval_seconds=0.01)
        await evictor.start_background()
        await asyncio.sleep(0.05)
        await evictor.stop()
        assert len(cache) == 0
        assert cache.stats()["total_evicted"] == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, cache):
        evictor = CacheEvictor(cache)
        await evictor.stop()
