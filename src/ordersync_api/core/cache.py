"""Shared key-value cache (Redis) connection."""

import redis.asyncio as aioredis

from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)


def create_redis(host: str, port: int, db: int = 0) -> aioredis.Redis:
    """Create the async Redis client shared by cursor, rate limiter and scheduler."""
    logger.info(f"Connecting to Redis at {host}:{port}/{db}")
    return aioredis.Redis(
        host=host,
        port=port,
        db=db,
        decode_responses=True,
    )


async def ping(cache) -> bool:
    """Return True if the cache answers."""
    try:
        return bool(await cache.ping())
    except Exception as e:
        logger.warning(f"Redis ping failed: {e}")
        return False
