"""
Cache Contract
==============
Only get / set / invalidate are consumed. The cache is never authoritative:
callers must be able to rebuild any value from persisted state on a miss.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from schemas.orders import utcnow
from settings import Settings, settings as default_settings

logger = structlog.get_logger().bind(component="cache")


class ICache(ABC):

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def invalidate(self, key: str) -> None:
        pass


class InMemoryCache(ICache):
    """TTL cache; the clock is injectable for deterministic expiry in tests"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: dict[str, tuple[Any, datetime]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry:
                value, expires = entry
                if self._clock() < expires:
                    return value
                del self._entries[key]
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)


class RedisCache(ICache):
    """Redis-backed cache. Errors degrade to a miss and are logged."""

    def __init__(self, config: Settings = default_settings, namespace: str = "orders"):
        self.config = config
        self.namespace = namespace
        self._redis = None

    async def initialize(self):
        """Initialize Redis connection"""
        import redis.asyncio as redis

        self._redis = redis.from_url(self.config.REDIS_URL)
        await self._redis.ping()
        logger.info("redis_connected", url=self.config.REDIS_URL[:20] + "...")

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self._redis.get(self._key(key))
        except Exception as e:
            logger.error("redis_get_error", key=key, error=str(e))
            return None
        return json.loads(data) if data is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._redis.setex(self._key(key), ttl_seconds, json.dumps(value))
        except Exception as e:
            logger.error("redis_set_error", key=key, error=str(e))

    async def invalidate(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except Exception as e:
            logger.error("redis_delete_error", key=key, error=str(e))

    async def close(self):
        if self._redis:
            await self._redis.aclose()
