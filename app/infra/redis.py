"""
Redis Connection Management

Single shared async Redis connection used as the backing store for
conversation state. Callers treat a None client as "Redis unavailable"
and degrade to process memory.

After a failed connection attempt, reconnection is not tried again for
settings.redis_reconnect_interval seconds, so an outage costs one connect
timeout per interval instead of one per caller turn.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# Key namespace shared by everything this service stores
APP_PREFIX = "booking-orchestrator:v1:"


class RedisClient:
    """
    Shared Redis connection.

    - connection pooling and retries on timeout
    - returns None instead of raising when Redis is down
    - backs off reconnect attempts after a failure
    """

    _client: Optional[Redis] = None
    _connected: bool = False
    _retry_after: float = 0.0

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create the Redis client.

        Returns:
            Redis client, or None while Redis is unavailable
        """
        if cls._client is not None and cls._connected:
            return cls._client

        if time.monotonic() < cls._retry_after:
            return None

        try:
            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout,
                socket_timeout=settings.redis_socket_timeout,
                retry_on_timeout=True,
                retry=Retry(ExponentialBackoff(), retries=2),
            )

            await cls._client.ping()
            cls._connected = True
            cls._retry_after = 0.0
            logger.info("Redis connection established")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(
                f"Failed to connect to Redis, next attempt in "
                f"{settings.redis_reconnect_interval}s: {e}"
            )
            cls._connected = False
            cls._client = None
            cls._retry_after = time.monotonic() + settings.redis_reconnect_interval
            return None

    @classmethod
    def mark_unavailable(cls) -> None:
        """Drop a connection that failed mid-operation."""
        cls._connected = False
        cls._client = None
        cls._retry_after = time.monotonic() + settings.redis_reconnect_interval

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False

    @classmethod
    def is_connected(cls) -> bool:
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """Get the shared Redis client, or None if Redis is unavailable."""
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for readiness probes.

    Returns:
        True if Redis answers PING
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        RedisClient.mark_unavailable()
        return False
