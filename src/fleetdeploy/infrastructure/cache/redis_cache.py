"""Redis cache implementation."""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio
import structlog

from fleetdeploy.config import RedisSettings
from fleetdeploy.domain.ports.services import CacheService


logger = structlog.get_logger(__name__)


class RedisCacheService(CacheService):
    """Redis implementation of CacheService.

    Values are stored as JSON; keys are namespaced so :meth:`clear` never
    touches data owned by other applications sharing the instance.
    """

    def __init__(self, client: redis.asyncio.Redis, namespace: str = "fleetdeploy") -> None:
        self._client = client
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        value = await self._client.get(self._key(key))
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value.decode("utf-8") if isinstance(value, bytes) else value

    async def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        serialized = json.dumps(value, default=str) if not isinstance(value, str) else value
        await self._client.setex(self._key(key), ttl_seconds, serialized)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(self._key(key)))

    async def clear(self, prefix: str = "") -> int:
        removed = 0
        async for key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
            removed += await self._client.delete(key)
        logger.info("cache_cleared", prefix=prefix, removed=removed)
        return removed


def create_redis_client(settings: RedisSettings) -> redis.asyncio.Redis:
    """Factory function to create a Redis client."""
    return redis.asyncio.Redis.from_url(
        settings.url,
        decode_responses=False,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
        retry_on_timeout=True,
    )
