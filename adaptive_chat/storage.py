# adaptive_chat/storage.py
"""
Key-value persistence used for contexts, behavior snapshots and sessions

Values are JSON-serializable. The Redis store is the production backend;
the in-memory store serializes through JSON as well so both behave alike.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import settings
from .exceptions import StoreError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """String key -> JSON-serializable value"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store for development and tests"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def set_raw(self, key: str, raw: str) -> None:
        """Store a pre-encoded string as-is"""
        self._data[key] = raw

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, pattern: str = "*") -> List[str]:
        if pattern == "*":
            return list(self._data.keys())
        prefix = pattern.rstrip("*")
        return [key for key in self._data if key.startswith(prefix)]


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store with a key prefix and lazy connection"""

    def __init__(self, redis_url: str = None, key_prefix: str = None, password: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.key_prefix = key_prefix if key_prefix is not None else settings.STORE_KEY_PREFIX
        self.password = password or settings.REDIS_PASSWORD
        self._redis: Optional[redis.Redis] = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def connect(self) -> redis.Redis:
        if self._redis is None:
            try:
                client = redis.from_url(self.redis_url, password=self.password, decode_responses=True)
                await client.ping()
            except RedisError as e:
                logger.error(f"Failed to connect to Redis at {self.redis_url}: {e}")
                raise StoreError(f"Redis unavailable: {e}") from e
            self._redis = client
            logger.info(f"Connected to Redis at {self.redis_url}")
        return self._redis

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def get(self, key: str) -> Optional[Any]:
        client = await self.connect()
        try:
            raw = await client.get(self._key(key))
        except RedisError as e:
            raise StoreError(f"Failed to read {key}: {e}") from e
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        client = await self.connect()
        try:
            await client.set(self._key(key), json.dumps(value))
        except RedisError as e:
            raise StoreError(f"Failed to write {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        client = await self.connect()
        try:
            return bool(await client.delete(self._key(key)))
        except RedisError as e:
            raise StoreError(f"Failed to delete {key}: {e}") from e

    async def keys(self, pattern: str = "*") -> List[str]:
        client = await self.connect()
        try:
            found = await client.keys(self._key(pattern))
        except RedisError as e:
            raise StoreError(f"Failed to list keys: {e}") from e
        return [key[len(self.key_prefix):] for key in found]
