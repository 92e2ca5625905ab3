"""
Redis client factory for rate limiting counters.

The API creates one client in its lifespan and stores it on
`app.state.redis`; there is no module-level client.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_redis_client(settings: Settings | None = None) -> "redis.Redis":
    """
    Create a Redis async client with production-ready configuration.

    - Connection pooling (max 20 connections)
    - Automatic retry on timeout for transient failures
    - Health check pings every 30 seconds

    Connections are opened lazily, so this never fails on an unreachable
    server; the first command does.
    """
    settings = settings or get_settings()

    client = redis.from_url(
        settings.REDIS_URL,
        max_connections=20,
        decode_responses=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )

    logger.info(
        f"Redis client initialized: {settings.REDIS_URL} "
        f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
    )
    return client


async def ping_redis(client: "redis.Redis") -> bool:
    """Return True if the server answers PING."""
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.error(f"Redis ping failed: {e}")
        return False
