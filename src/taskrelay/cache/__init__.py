"""Owner-keyed read-through cache and its backends."""

from taskrelay.cache.interface import CacheBackend
from taskrelay.cache.memory import InMemoryCacheBackend
from taskrelay.cache.read_through import CacheConfig, CacheStats, ReadThroughCache
from taskrelay.cache.redis import RedisCacheBackend

__all__ = [
    "CacheBackend",
    "CacheConfig",
    "CacheStats",
    "InMemoryCacheBackend",
    "ReadThroughCache",
    "RedisCacheBackend",
]
