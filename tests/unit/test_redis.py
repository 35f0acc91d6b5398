"""Tests for the shared Redis connection."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError, RedisError

from app.infra.redis import RedisClient, check_redis_health


@pytest.fixture(autouse=True)
def fresh_client():
    RedisClient.mark_unavailable()
    RedisClient._retry_after = 0.0
    yield
    RedisClient.mark_unavailable()
    RedisClient._retry_after = 0.0


def _fake_redis(ping) -> MagicMock:
    client = MagicMock()
    client.ping = ping
    return client


class TestRedisClient:
    """Test connection reuse and reconnect backoff."""

    @pytest.mark.asyncio
    async def test_connection_reused(self):
        fake = _fake_redis(AsyncMock(return_value=True))

        with patch("app.infra.redis.redis.from_url", return_value=fake) as from_url:
            assert await RedisClient.get_client() is fake
            assert await RedisClient.get_client() is fake

        from_url.assert_called_once()
        assert RedisClient.is_connected()

    @pytest.mark.asyncio
    async def test_failed_connect_backs_off(self):
        fake = _fake_redis(AsyncMock(side_effect=ConnectionError("refused")))

        with patch("app.infra.redis.redis.from_url", return_value=fake) as from_url:
            assert await RedisClient.get_client() is None
            assert await RedisClient.get_client() is None

        from_url.assert_called_once()
        assert not RedisClient.is_connected()

    @pytest.mark.asyncio
    async def test_health_check_drops_broken_connection(self):
        fake = _fake_redis(AsyncMock(side_effect=[True, RedisError("gone")]))

        with patch("app.infra.redis.redis.from_url", return_value=fake):
            assert await check_redis_health() is False

        assert not RedisClient.is_connected()

    @pytest.mark.asyncio
    async def test_health_check(self):
        fake = _fake_redis(AsyncMock(return_value=True))

        with patch("app.infra.redis.redis.from_url", return_value=fake):
            assert await check_redis_health() is True
