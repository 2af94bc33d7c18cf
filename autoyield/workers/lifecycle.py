"""
Worker lifecycle utilities.

Per-user execution locks for the autonomous scheduler. One pipeline per
user at a time across every API instance; the lease expires on its own
if a holder crashes mid-run.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..core.config import get_settings
from ..services.redis_service import RedisService, get_redis_service

logger = logging.getLogger(__name__)

# Unique identifier for this process instance
_INSTANCE_ID: Optional[str] = None

USER_LOCK_PREFIX = "rebalance:user:"


class LockServiceUnavailable(Exception):
    """The lock store could not be reached; the pipeline must not run."""


def get_instance_id() -> str:
    """Get or create the unique instance ID for this process."""
    global _INSTANCE_ID
    if _INSTANCE_ID is None:
        _INSTANCE_ID = f"{os.getpid()}:{uuid.uuid4().hex[:8]}"
    return _INSTANCE_ID


class UserLock:
    """
    Redis-backed mutual exclusion keyed by wallet address.

    Usage:
        async with UserLock().hold(wallet) as acquired:
            if not acquired:
                return skip("rebalance already in progress")
            ...

    ``hold`` raises LockServiceUnavailable when Redis cannot be reached.
    """

    def __init__(
        self,
        redis_service: Optional[RedisService] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis_service = redis_service
        self.ttl_seconds = ttl_seconds or get_settings().user_lock_ttl_seconds

    async def _service(self) -> RedisService:
        if self._redis_service is None:
            self._redis_service = await get_redis_service()
        return self._redis_service

    @staticmethod
    def _name(wallet: str) -> str:
        return f"{USER_LOCK_PREFIX}{wallet.lower()}"

    async def acquire(self, wallet: str) -> Optional[str]:
        """
        Try to take the lock.

        Returns:
            Owner token, or None if held elsewhere

        Raises:
            LockServiceUnavailable: Redis unreachable
        """
        try:
            service = await self._service()
            return await service.acquire_lock(self._name(wallet), self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Failed to acquire user lock for {wallet}: {e}")
            raise LockServiceUnavailable(str(e)) from e

    async def release(self, wallet: str, token: str) -> None:
        try:
            service = await self._service()
            if not await service.release_lock(self._name(wallet), token):
                logger.warning(f"User lock for {wallet} expired before release")
        except Exception as e:
            # Lease expiry frees it
            logger.warning(f"Failed to release user lock for {wallet}: {e}")

    @asynccontextmanager
    async def hold(self, wallet: str) -> AsyncIterator[bool]:
        token = await self.acquire(wallet)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self.release(wallet, token)
