"""
Cache abstraction injected into services.

RedisCache backs production; InMemoryCache and NullCache are used in tests
and when REDIS_URL is not configured.
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from redis.asyncio.client import Redis

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """Key-value cache with per-key TTL (seconds)."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def ttl(self, key: str) -> Optional[int]:
        ...


class RedisCache:
    """Cache backed by Redis. Values are stored as JSON."""

    def __init__(self, client: Redis, prefix: str = "coursepay"):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self.client.setex(self._key(key), ttl, json.dumps(value))

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self.client.ttl(self._key(key))
        # -2: missing key, -1: no expiry
        if remaining < 0:
            return None
        return remaining


class InMemoryCache:
    """Process-local cache. One instance per owner, never module-global."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[Any, float]] = {}

    async def get(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._items[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._items[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    async def ttl(self, key: str) -> Optional[int]:
        item = self._items.get(key)
        if item is None:
            return None
        remaining = item[1] - self._clock()
        if remaining <= 0:
            del self._items[key]
            return None
        return int(remaining)


class NullCache:
    """Cache that stores nothing."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def ttl(self, key: str) -> Optional[int]:
        return None
