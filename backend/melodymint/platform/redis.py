import logging
from uuid import uuid4

from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from melodymint.platform.config import settings

logger = logging.getLogger(__name__)

_redis: Redis | None = None

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = from_url(settings.redis_url, decode_responses=True)
    return _redis


async def try_acquire_lock(key: str, ttl_seconds: int) -> str | None:
    """Return a lock token, or None when someone else holds ``key``.

    Advisory only: when Redis is unreachable a token is still returned so
    callers proceed and rely on their own database guards.
    """
    token = str(uuid4())
    try:
        acquired = await get_redis().set(key, token, ex=ttl_seconds, nx=True)
    except (RedisError, OSError) as exc:
        logger.warning("Redis unavailable for lock %s, continuing without it: %s", key, exc)
        return token
    return token if acquired else None


async def release_lock(key: str, token: str) -> None:
    try:
        await get_redis().eval(_RELEASE_SCRIPT, 1, key, token)
    except (RedisError, OSError) as exc:
        logger.warning("Failed to release lock %s: %s", key, exc)
