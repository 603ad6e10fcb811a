"""
In-memory cache backend.

Provides a TTL-aware dictionary for tests and single-process development.
The clock is injectable so expiry can be tested without sleeping.
"""

import asyncio
import time
from collections.abc import Callable


class InMemoryCacheBackend:
    """
    In-memory implementation of CacheBackend.

    Example:
        >>> now = [0.0]
        >>> backend = InMemoryCacheBackend(clock=lambda: now[0])
        >>> await backend.set("tasks:u1", b"[]", ttl=30)
        >>> now[0] = 31.0
        >>> await backend.get("tasks:u1") is None
        True
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[bytes, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        """Remove every entry. Useful for test teardown."""
        async with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() < entry[1]


__all__ = ["InMemoryCacheBackend"]
