"""Redis connection for generation job tracking.

Redis only backs the job tracker, which is informational. An unreachable
Redis at startup is logged and the service starts anyway: generations run
untracked and only the job status endpoint reports the outage.
"""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> bool:
    """Create the shared client and ping it.

    Returns:
        True if Redis answered; False if it did not (the client is kept so
        the tracker recovers once Redis comes back)
    """
    global _redis

    if _redis is not None:
        return await redis_reachable()

    settings = get_settings()
    _redis = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )

    reachable = await redis_reachable()
    if not reachable:
        logger.warning("redis_unavailable_at_startup", action="job_tracking_degraded")
    return reachable


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis | None:
    """Return the shared client, or None if init_redis() has not run."""
    return _redis


async def redis_reachable() -> bool:
    if _redis is None:
        return False
    try:
        await _redis.ping()
    except (RedisError, OSError):
        return False
    return True
