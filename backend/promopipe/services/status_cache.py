"""Keyed cache with expiring entries for live pipeline status."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from promopipe.clock import Clock, system_clock
from promopipe.errors import StorageError

logger = logging.getLogger(__name__)


def status_key(run_id: str) -> str:
    return f"pipeline_status:{run_id}"


class StatusCache(ABC):
    @abstractmethod
    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        pass


class InMemoryStatusCache(StatusCache):
    """Dict cache whose entries expire according to the injected clock."""

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        self._entries[key] = (self._clock.now() + ttl_seconds, json.dumps(value))

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, data = entry
        if expires_at <= self._clock.now():
            del self._entries[key]
            return None
        return json.loads(data)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        return entry[0] - self._clock.now() if entry else None


class RedisStatusCache(StatusCache):
    """Redis-backed cache using SETEX so entries expire server-side."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", key_prefix: str = "", client=None):
        self.redis = client or aioredis.from_url(redis_url, decode_responses=True)
        self.key_prefix = key_prefix
        logger.info("Redis status cache: %s", redis_url)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.redis.setex(self._key(key), ttl_seconds, json.dumps(value))
        except RedisError as e:
            raise StorageError(f"Redis write failed for {key}: {e}") from e

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            data = await self.redis.get(self._key(key))
        except RedisError as e:
            raise StorageError(f"Redis read failed for {key}: {e}") from e
        return json.loads(data) if data else None

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(self._key(key))
        except RedisError as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis.aclose()
