"""
config/redis_client.py
Async Redis client for booking mutexes, the JWT deny-list and rate limiting.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# Compare-and-delete: only the token that set the lock may remove it
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockNotAcquired(Exception):
    """Another request currently holds the mutex."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock {key} is held by another request")


class RedisCache:
    """Helper class for common Redis locking patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Mutexes ──────────────────────────────────────────────
    async def acquire(self, key: str, token: str, ttl: int) -> bool:
        """
        Atomic lock using SET NX (set if not exists).
        Returns True if lock acquired, False if already held.
        """
        result = await self.client.set(key, token, ex=ttl, nx=True)
        return result is True

    async def release(self, key: str, token: str) -> bool:
        """
        Delete `key` only while it still holds `token`. A holder that outlived
        the TTL must not drop the next holder's lock.
        """
        result = await self.client.eval(RELEASE_SCRIPT, 1, key, token)
        return result == 1

    @asynccontextmanager
    async def hold(self, key: str, owner: str, ttl: int) -> AsyncIterator[None]:
        """
        Hold `key` for the duration of the block. Raises LockNotAcquired on
        contention. If Redis itself is unreachable the block still runs;
        row locks and unique constraints in the database remain in force.
        """
        token = f"{owner}:{uuid.uuid4().hex}"
        try:
            acquired = await self.acquire(key, token, ttl)
        except RedisError as e:
            logger.warning(f"Redis lock {key} unavailable, continuing without it: {e}")
            acquired = None

        if acquired is None:
            yield
            return
        if not acquired:
            raise LockNotAcquired(key)
        try:
            yield
        finally:
            try:
                if not await self.release(key, token):
                    logger.warning(f"Redis lock {key} expired before release")
            except RedisError as e:
                logger.warning(f"Failed to release Redis lock {key}: {e}")

    def booking_lock(self, booking_id: str, owner: str):
        return self.hold(f"booking_lock:{booking_id}", owner, settings.BOOKING_LOCK_TTL_SECONDS)

    def talent_lock(self, talent_id: str, owner: str):
        return self.hold(f"talent_lock:{talent_id}", owner, settings.TALENT_LOCK_TTL_SECONDS)

    # ── JWT Deny List ─────────────────────────────────────────
    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1
