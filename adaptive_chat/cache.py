"""
Time-bounded in-memory caches

Lookups report hits and misses explicitly. Entries are aged either from the
moment they were stored or from a timestamp carried by the value itself
(the context cache ages entries off ``last_analyzed``). A ``CacheSweeper``
evicts expired entries on an interval, independent of request handling.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheLookup(Generic[V]):
    """Result of a cache read"""
    hit: bool
    value: Optional[V] = None


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    stored_at: datetime


class TTLCache(Generic[V]):
    """Dictionary cache whose entries expire after ``ttl`` seconds"""

    def __init__(self, ttl: float, clock: Callable[[], datetime] = datetime.now,
                 timestamp_of: Optional[Callable[[V], datetime]] = None,
                 name: str = "cache"):
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._timestamp_of = timestamp_of
        self._entries: Dict[str, _CacheEntry[V]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _age(self, entry: _CacheEntry[V]) -> float:
        born = self._timestamp_of(entry.value) if self._timestamp_of else entry.stored_at
        return (self._clock() - born).total_seconds()

    def get(self, key: str) -> CacheLookup[V]:
        entry = self._entries.get(key)
        if entry is None or self._age(entry) >= self.ttl:
            self.misses += 1
            return CacheLookup(hit=False)
        self.hits += 1
        return CacheLookup(hit=True, value=entry.value)

    def set(self, key: str, value: V) -> None:
        self._entries[key] = _CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in list(keys) if self.invalidate(key))

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def sweep(self) -> int:
        """Evict expired entries and return how many were removed"""
        expired = [key for key, entry in self._entries.items() if self._age(entry) >= self.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired entries from {self.name}")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses, "ttl": self.ttl}


class CacheSweeper:
    """Runs periodic sweeps over one or more callbacks as a background task"""

    def __init__(self, interval: float, *sweeps: Callable[[], Any], name: str = "sweeper"):
        self.interval = interval
        self.name = name
        self._sweeps = list(sweeps)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_worker())
        logger.info(f"Started {self.name} (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info(f"Stopped {self.name}")

    async def run_once(self) -> None:
        for sweep in self._sweeps:
            result = sweep()
            if asyncio.iscoroutine(result):
                await result

    async def _sweep_worker(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}")
