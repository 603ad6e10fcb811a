"""Unit tests for RedisCacheBackend with a mocked client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from taskrelay.cache import CacheBackend, RedisCacheBackend
from taskrelay.exceptions import CacheBackendError


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def backend(client: MagicMock) -> RedisCacheBackend:
    return RedisCacheBackend(client)


class TestRedisCacheBackend:
    def test_implements_protocol(self, backend):
        assert isinstance(backend, CacheBackend)

    async def test_get_returns_bytes(self, backend, client):
        client.get.return_value = b"[]"

        assert await backend.get("tasks:u1") == b"[]"
        client.get.assert_awaited_once_with("tasks:u1")

    async def test_get_missing(self, backend):
        assert await backend.get("tasks:u1") is None

    async def test_get_encodes_str_values(self, backend, client):
        client.get.return_value = "[]"

        assert await backend.get("tasks:u1") == b"[]"

    async def test_set_uses_millisecond_expiry(self, backend, client):
        await backend.set("tasks:u1", b"[]", ttl=30)

        client.set.assert_awaited_once_with("tasks:u1", b"[]", px=30000)

    async def test_set_tiny_ttl_rounds_up(self, backend, client):
        await backend.set("tasks:u1", b"[]", ttl=0.0001)

        assert client.set.await_args.kwargs["px"] == 1

    async def test_delete(self, backend, client):
        await backend.delete("tasks:u1")

        client.delete.assert_awaited_once_with("tasks:u1")

    @pytest.mark.parametrize("method, args", [
        ("get", ("tasks:u1",)),
        ("set", ("tasks:u1", b"[]", 30)),
        ("delete", ("tasks:u1",)),
    ])
    async def test_redis_errors_wrapped(self, backend, client, method, args):
        getattr(client, method).side_effect = RedisConnectionError("refused")

        with pytest.raises(CacheBackendError, match="refused"):
            await getattr(backend, method)(*args)

    async def test_ping(self, backend, client):
        assert await backend.ping() is True

        client.ping.side_effect = RedisTimeoutError("slow")
        with pytest.raises(CacheBackendError):
            await backend.ping()

    async def test_close(self, backend, client):
        await backend.close()

        client.aclose.assert_awaited_once()

    def test_from_url(self):
        with patch("taskrelay.cache.redis.aioredis.from_url") as from_url:
            backend = RedisCacheBackend.from_url("redis://cache:6379/1")

        from_url.assert_called_once_with(
            "redis://cache:6379/1",
            decode_responses=False,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        assert backend.client is from_url.return_value
