"""
Read-through cache with synchronous invalidation.

Entries are keyed by owner (`<prefix>:<owner_id>`) and stored with a fixed
TTL. The mutation path calls `invalidate()` after every successful write
and before returning, so a later read for the same owner never sees
pre-mutation data. Backend failures never reach the caller: a failed read
is a miss, a failed write or delete is logged.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from taskrelay.cache.interface import CacheBackend
from taskrelay.exceptions import CacheBackendError
from taskrelay.observability import ATTR_CACHE_HIT, ATTR_OWNER_ID, Tracer, create_tracer
from taskrelay.serialization import json_dumpb, json_loads

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheConfig:
    """
    Configuration for the read-through cache.

    Attributes:
        redis_url: Redis URL used when building a Redis backend
        ttl_seconds: Lifetime of a cached result set
        key_prefix: Key namespace, entries are `<key_prefix>:<owner_id>`
        enable_tracing: Create spans for reads and invalidations
    """

    redis_url: str = "redis://localhost:6379/0"
    ttl_seconds: float = 30.0
    key_prefix: str = "tasks"
    enable_tracing: bool = True

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if not self.key_prefix:
            raise ValueError("key_prefix must not be empty")


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stores: int = 0
    invalidations: int = 0
    errors: int = 0


class ReadThroughCache:
    """
    Owner-keyed read-through cache.

    Example:
        >>> cache = ReadThroughCache(InMemoryCacheBackend())
        >>> tasks = await cache.read("u1", lambda: store.list_for_owner("u1"))
        >>> await cache.invalidate("u1")
    """

    def __init__(
        self,
        backend: CacheBackend,
        config: CacheConfig | None = None,
        *,
        tracer: Tracer | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or CacheConfig()
        self._tracer = tracer or create_tracer(__name__, self._config.enable_tracing)
        self._stats = CacheStats()

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def key_for(self, owner_id: str) -> str:
        return f"{self._config.key_prefix}:{owner_id}"

    async def read(
        self,
        owner_id: str,
        loader: Callable[[], Awaitable[T]],
        *,
        dump: Callable[[T], bytes] = json_dumpb,
        load: Callable[[bytes], T] = json_loads,
    ) -> T:
        """
        Return the cached value for `owner_id`, loading and storing it on a miss.

        A None result from the loader is returned but not cached.

        Args:
            owner_id: Owner whose entry is read
            loader: Fetches the value from the source of truth
            dump: Encodes the value for the backend
            load: Decodes a stored value
        """
        key = self.key_for(owner_id)
        with self._tracer.span("taskrelay.cache.read", {ATTR_OWNER_ID: owner_id}) as span:
            cached = await self._safe_get(key)
            if cached is not None:
                try:
                    value = load(cached)
                except (ValueError, TypeError) as e:
                    self._stats.errors += 1
                    logger.warning(
                        f"Discarding undecodable cache entry {key}: {e}",
                        extra={"cache_key": key, "error": str(e)},
                    )
                else:
                    self._stats.hits += 1
                    if span is not None:
                        span.set_attribute(ATTR_CACHE_HIT, True)
                    return value

            self._stats.misses += 1
            if span is not None:
                span.set_attribute(ATTR_CACHE_HIT, False)

            value = await loader()
            if value is not None:
                await self._safe_set(key, dump(value))
            return value

    async def invalidate(self, owner_id: str) -> None:
        """Delete the owner's entry. Never raises for backend failures."""
        key = self.key_for(owner_id)
        with self._tracer.span("taskrelay.cache.invalidate", {ATTR_OWNER_ID: owner_id}):
            try:
                await self._backend.delete(key)
            except CacheBackendError as e:
                self._stats.errors += 1
                logger.error(
                    f"Cache invalidation failed for {key}: {e}",
                    extra={"cache_key": key, "owner_id": owner_id, "error": str(e)},
                )
                return
            self._stats.invalidations += 1
            logger.debug(f"Invalidated {key}", extra={"cache_key": key})

    async def _safe_get(self, key: str) -> bytes | None:
        try:
            return await self._backend.get(key)
        except CacheBackendError as e:
            self._stats.errors += 1
            logger.warning(
                f"Cache read failed for {key}, loading from store: {e}",
                extra={"cache_key": key, "error": str(e)},
            )
            return None

    async def _safe_set(self, key: str, value: bytes) -> None:
        try:
            await self._backend.set(key, value, self._config.ttl_seconds)
        except CacheBackendError as e:
            self._stats.errors += 1
            logger.warning(
                f"Cache write failed for {key}: {e}",
                extra={"cache_key": key, "error": str(e)},
            )
            return
        self._stats.stores += 1

    def stats_dict(self) -> dict[str, Any]:
        return {
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "stores": self._stats.stores,
            "invalidations": self._stats.invalidations,
            "errors": self._stats.errors,
        }


__all__ = [
    "CacheConfig",
    "CacheStats",
    "ReadThroughCache",
]
