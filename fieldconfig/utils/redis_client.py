from functools import lru_cache

from redis.asyncio import Redis

from fieldconfig.core.settings import settings


@lru_cache(maxsize=1)
def get_redis_client() -> Redis:
    """Shared client for health probes; the limiter opens its own connection."""
    return Redis.from_url(settings.redis_url, decode_responses=True, socket_timeout=2)
