# tests/test_cache.py
import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock

from adaptive_chat.cache import CacheSweeper, TTLCache


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestTTLCache:
    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 1, 1, 12, 0))

    @pytest.fixture
    def cache(self, clock):
        return TTLCache(60, clock=clock)

    def test_hit_and_miss_are_explicit(self, cache):
        assert cache.get("k").hit is False

        cache.set("k", None)
        lookup = cache.get("k")

        assert lookup.hit is True
        assert lookup.value is None
        assert cache.stats() == {"size": 1, "hits": 1, "misses": 1, "ttl": 60}

    def test_entry_expires(self, cache, clock):
        cache.set("k", "v")
        clock.advance(seconds=59)
        assert cache.get("k").hit is True

        clock.advance(seconds=1)
        assert cache.get("k").hit is False

    def test_value_timestamp_drives_age(self, clock):
        cache = TTLCache(60, clock=clock, timestamp_of=lambda value: value["at"])
        cache.set("k", {"at": clock.now - timedelta(seconds=61)})

        assert cache.get("k").hit is False

    def test_sweep_and_invalidate(self, cache, clock):
        cache.set("old", 1)
        clock.advance(seconds=30)
        cache.set("new", 2)
        cache.set("gone", 3)
        clock.advance(seconds=40)

        assert cache.invalidate("gone") is True
        assert cache.invalidate("gone") is False
        assert cache.sweep() == 1
        assert cache.keys() == ["new"]


class TestCacheSweeper:
    @pytest.mark.asyncio
    async def test_run_once_awaits_coroutine_sweeps(self):
        sync_sweep = Mock(return_value=0)
        calls = []

        async def async_sweep():
            calls.append("async")

        sweeper = CacheSweeper(10, sync_sweep, async_sweep)
        await sweeper.run_once()

        sync_sweep.assert_called_once()
        assert calls == ["async"]

    @pytest.mark.asyncio
    async def test_background_worker_runs_and_survives_errors(self):
        failing = Mock(side_effect=[RuntimeError("boom"), 0, 0, 0, 0, 0, 0, 0, 0, 0])
        sweeper = CacheSweeper(0.01, failing)

        await sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert failing.call_count >= 2
        assert not sweeper.running
