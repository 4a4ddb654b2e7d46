import redis.asyncio as aioredis

from ledgersync.core.config import settings

# Shared async Redis client (created once, reused across jobs)
_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis
