"""
Redis service for distributed locks and caching.

Provides:
- Per-user execution locks with owner tokens and bounded lease
- Opportunity catalogue caching
- Connection singleton management
"""

import json
import logging
import uuid
from typing import Any, Optional

import redis.asyncio as redis

from ..core.config import get_settings

logger = logging.getLogger(__name__)


# Lua script: atomically compare owner token and delete.
# Returns 1 if deleted, 0 otherwise.
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class RedisService:
    """
    Redis service for locks and caching.

    Usage:
        redis_service = await get_redis_service()
        token = await redis_service.acquire_lock("user:0xabc", ttl=300)
        ...
        await redis_service.release_lock("user:0xabc", token)
    """

    PREFIX_LOCK = "lock:"
    PREFIX_RATE_LIMIT = "rate_limit:transfer:"
    PREFIX_CACHE = "cache:"

    OPPORTUNITIES_CACHE_KEY = "opportunities"

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    # ==================== Locks ====================

    async def acquire_lock(self, name: str, ttl: int) -> Optional[str]:
        """
        Try to take a lock with SET NX EX.

        Returns:
            The owner token if acquired, None if already held
        """
        token = uuid.uuid4().hex
        acquired = await self.redis.set(
            f"{self.PREFIX_LOCK}{name}", token, nx=True, ex=ttl
        )
        return token if acquired else None

    async def release_lock(self, name: str, token: str) -> bool:
        """Release a lock only if still held by ``token``"""
        result = await self.redis.eval(
            _RELEASE_LUA, 1, f"{self.PREFIX_LOCK}{name}", token
        )
        return result == 1

    async def is_locked(self, name: str) -> bool:
        return await self.redis.exists(f"{self.PREFIX_LOCK}{name}") > 0

    # ==================== Cache ====================

    async def cache_set(self, key: str, value: Any, ttl: int = 60) -> bool:
        await self.redis.setex(f"{self.PREFIX_CACHE}{key}", ttl, json.dumps(value))
        return True

    async def cache_get(self, key: str) -> Optional[Any]:
        result = await self.redis.get(f"{self.PREFIX_CACHE}{key}")
        if result:
            if isinstance(result, bytes):
                result = result.decode()
            return json.loads(result)
        return None

    # ==================== Utility ====================

    async def ping(self) -> bool:
        """Check Redis connection"""
        try:
            return await self.redis.ping()
        except Exception:
            return False

    async def close(self) -> None:
        """Close Redis connection"""
        await self.redis.close()


_redis_client: Optional[redis.Redis] = None
_redis_service: Optional[RedisService] = None


def _connect() -> redis.Redis:
    return redis.from_url(
        str(get_settings().redis_url),
        decode_responses=False,
        retry_on_timeout=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


async def get_redis_client() -> redis.Redis:
    """
    Shared client. A client that no longer answers PING is replaced, so a
    Redis restart between cron runs does not leave a dead pool behind.
    """
    global _redis_client, _redis_service
    if _redis_client is not None:
        try:
            await _redis_client.ping()
        except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
            logger.warning(f"Redis client stale ({e}), reconnecting")
            await _redis_client.close()
            _redis_client = _redis_service = None

    if _redis_client is None:
        _redis_client = _connect()
    return _redis_client


async def get_redis_service() -> RedisService:
    global _redis_service
    client = await get_redis_client()
    if _redis_service is None or _redis_service.redis is not client:
        _redis_service = RedisService(client)
    return _redis_service


async def close_redis() -> None:
    global _redis_client, _redis_service
    if _redis_client is not None:
        await _redis_client.close()
    _redis_client = _redis_service = None
