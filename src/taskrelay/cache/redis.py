"""Redis cache backend using redis-py's asyncio client."""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskrelay.exceptions import CacheBackendError

logger = logging.getLogger(__name__)


class RedisCacheBackend:
    """
    CacheBackend on top of Redis string keys with a PX expiry.

    Every Redis failure is re-raised as `CacheBackendError`.

    Args:
        client: Existing client (values must not be decoded to str)

    Example:
        >>> backend = RedisCacheBackend.from_url("redis://localhost:6379/0")
        >>> await backend.set("tasks:u1", b"[]", ttl=30)
        >>> await backend.close()
    """

    def __init__(self, client: Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        *,
        socket_timeout: float | None = 2.0,
        socket_connect_timeout: float | None = 2.0,
        **kwargs: Any,
    ) -> RedisCacheBackend:
        client = aioredis.from_url(
            redis_url,
            decode_responses=False,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            **kwargs,
        )
        return cls(client)

    @property
    def client(self) -> Redis:
        return self._redis

    async def get(self, key: str) -> bytes | None:
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            raise CacheBackendError(f"GET {key} failed: {e}") from e
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        try:
            await self._redis.set(key, value, px=max(1, int(ttl * 1000)))
        except RedisError as e:
            raise CacheBackendError(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            raise CacheBackendError(f"DEL {key} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            raise CacheBackendError(f"PING failed: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Closed Redis cache client")


__all__ = ["RedisCacheBackend"]
