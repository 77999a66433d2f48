"""
Redis client and the batch-run lock.

Purpose:
- Best-effort distributed lock so two overlapping triggers (worker + manual
  HTTP run, or two worker replicas) do not both do the daily trip run
- Correctness never depends on it: trip generation is idempotent through
  the trip_slot_runs unique key, so an unreachable Redis only means the
  run proceeds unlocked

Usage:
    async with run_lock("trip-generation:2026-10-20", ttl_sec=900) as acquired:
        if not acquired:
            ...  # another run holds it

REDIS_URL=disabled skips Redis entirely.
"""
import logging
import uuid
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)

LOCK_PREFIX = "carpool:lock:"

# compare-and-delete so we never release a lock that expired and was re-taken
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    """Lazily create the client; None when Redis is disabled."""
    global redis_client
    if not settings.REDIS_URL or settings.REDIS_URL == "disabled":
        return None
    if redis_client is None:
        logger.info("[redis_client] Creating Redis client")
        redis_client = redis.Redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    return redis_client


async def close_redis():
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None


@asynccontextmanager
async def run_lock(name: str, ttl_sec: int):
    """Yield True if this caller may run (lock taken or Redis unavailable), else False."""
    client = get_redis()
    if client is None:
        yield True
        return

    key = LOCK_PREFIX + name
    token = uuid.uuid4().hex
    try:
        acquired = await client.set(key, token, nx=True, ex=ttl_sec)
    except RedisError as e:
        logger.warning("[redis_client] Lock %s unavailable, running unlocked: %s", key, e)
        yield True
        return

    if not acquired:
        logger.info("[redis_client] Lock %s is held by another run", key)
        yield False
        return

    try:
        yield True
    finally:
        try:
            await client.eval(_RELEASE_SCRIPT, 1, key, token)
        except RedisError as e:
            logger.warning("[redis_client] Lock %s release failed (expires in %ss): %s", key, ttl_sec, e)
