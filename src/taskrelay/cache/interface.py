"""Cache backend protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    """
    Key/value store with per-entry TTL.

    Backends raise `CacheBackendError` on I/O failure; the read-through
    cache turns that into a miss or a skipped write.
    """

    async def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if absent or expired."""
        ...

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        """Store a value that expires after `ttl` seconds."""
        ...

    async def delete(self, key: str) -> None:
        """Remove a key. Deleting an absent key is not an error."""
        ...


__all__ = ["CacheBackend"]
