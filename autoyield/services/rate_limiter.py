"""
Sliding-window rate limiter for manual transfers.

Only successful attempts count toward the daily cap; failed attempts are
kept for audit but filtered out of every limit calculation. Identities
are wallet addresses, compared case-insensitively. Attempts older than
the retention window are dropped whenever an identity's history is read;
``cleanup`` sweeps identities that are never read again.

Two interchangeable stores:
- InMemoryRateLimitStore: process-local, guarded by an asyncio.Lock
- RedisRateLimitStore: one sorted set per identity, atomic via Lua

Use ``check_and_record`` from request handlers. ``check_limit`` followed
by ``record_attempt`` races when two requests for the same identity
arrive together.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis

from ..core.config import Settings, get_settings
from ..monitoring.metrics import get_metrics_collector
from .redis_service import RedisService, get_redis_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attempt:
    timestamp: float
    amount: float
    success: bool
    id: str


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None
    attempts_remaining: Optional[int] = None
    reset_time: Optional[float] = None


@dataclass(frozen=True)
class WindowState:
    """Outcome of an atomic check-and-record"""
    recorded: bool
    count: int
    oldest: Optional[float]


class RateLimitStore(ABC):
    """Attempt history keyed by identity"""

    @abstractmethod
    async def append(self, identity: str, attempt: Attempt) -> None: ...

    @abstractmethod
    async def attempts(self, identity: str, since: Optional[float] = None) -> list[Attempt]:
        """Retained attempts, oldest first. Drops this identity's attempts older than ``since``."""

    @abstractmethod
    async def clear(self, identity: str) -> None: ...

    @abstractmethod
    async def prune(self, before: float) -> int:
        """Drop attempts older than ``before`` for every identity"""

    @abstractmethod
    async def check_and_record(
        self,
        identity: str,
        attempt: Attempt,
        window_start: float,
        max_count: int,
        retain_after: Optional[float] = None,
    ) -> WindowState:
        """Append ``attempt`` iff fewer than ``max_count`` successes since ``window_start``"""

    @abstractmethod
    async def mark_failed(self, identity: str, attempt_id: str) -> bool: ...


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._history: dict[str, list[Attempt]] = {}
        self._lock = asyncio.Lock()

    async def append(self, identity: str, attempt: Attempt) -> None:
        async with self._lock:
            self._history.setdefault(identity, []).append(attempt)

    def _drop_before(self, identity: str, before: Optional[float]) -> list[Attempt]:
        history = self._history.get(identity, [])
        if before is not None:
            history = [a for a in history if a.timestamp >= before]
            if history:
                self._history[identity] = history
            else:
                self._history.pop(identity, None)
        return history

    async def attempts(self, identity: str, since: Optional[float] = None) -> list[Attempt]:
        async with self._lock:
            return sorted(self._drop_before(identity, since), key=lambda a: a.timestamp)

    async def clear(self, identity: str) -> None:
        async with self._lock:
            self._history.pop(identity, None)

    async def prune(self, before: float) -> int:
        removed = 0
        async with self._lock:
            for identity in list(self._history):
                kept = [a for a in self._history[identity] if a.timestamp >= before]
                removed += len(self._history[identity]) - len(kept)
                if kept:
                    self._history[identity] = kept
                else:
                    del self._history[identity]
        return removed

    async def check_and_record(
        self,
        identity: str,
        attempt: Attempt,
        window_start: float,
        max_count: int,
        retain_after: Optional[float] = None,
    ) -> WindowState:
        async with self._lock:
            self._drop_before(identity, retain_after)
            history = self._history.setdefault(identity, [])
            counted = sorted(
                a.timestamp for a in history if a.success and a.timestamp >= window_start
            )
            oldest = counted[0] if counted else None
            if len(counted) >= max_count:
                return WindowState(recorded=False, count=len(counted), oldest=oldest)
            history.append(attempt)
            return WindowState(recorded=True, count=len(counted), oldest=oldest)

    async def mark_failed(self, identity: str, attempt_id: str) -> bool:
        async with self._lock:
            history = self._history.get(identity, [])
            for i, attempt in enumerate(history):
                if attempt.id == attempt_id:
                    history[i] = Attempt(attempt.timestamp, attempt.amount, False, attempt.id)
                    return True
        return False


# Members are "timestamp:amount:success:id"; score is the timestamp.
_CHECK_AND_RECORD_LUA = """
if ARGV[6] then
    redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[6])
end
local entries = redis.call('ZRANGEBYSCORE', KEYS[1], ARGV[1], '+inf')
local count = 0
local oldest = ''
for _, member in ipairs(entries) do
    local ts, ok = string.match(member, '^([^:]+):[^:]+:([01]):')
    if ok == '1' then
        count = count + 1
        if oldest == '' then oldest = ts end
    end
end
if count >= tonumber(ARGV[2]) then
    return {0, count, oldest}
end
redis.call('ZADD', KEYS[1], ARGV[3], ARGV[4])
redis.call('EXPIRE', KEYS[1], ARGV[5])
return {1, count, oldest}
"""

_MARK_FAILED_LUA = """
local suffix = ':' .. ARGV[1]
local entries = redis.call('ZRANGE', KEYS[1], 0, -1, 'WITHSCORES')
for i = 1, #entries, 2 do
    local member = entries[i]
    if string.sub(member, -string.len(suffix)) == suffix then
        local ts, amount = string.match(member, '^([^:]+):([^:]+):')
        redis.call('ZREM', KEYS[1], member)
        redis.call('ZADD', KEYS[1], entries[i + 1], ts .. ':' .. amount .. ':0' .. suffix)
        return 1
    end
end
return 0
"""


def _encode_member(attempt: Attempt) -> str:
    return f"{attempt.timestamp:.6f}:{attempt.amount}:{int(attempt.success)}:{attempt.id}"


def _decode_member(member) -> Attempt:
    if isinstance(member, bytes):
        member = member.decode()
    ts, amount, success, attempt_id = member.split(":", 3)
    return Attempt(float(ts), float(amount), success == "1", attempt_id)


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisRateLimitStore(RateLimitStore):
    def __init__(self, client: redis.Redis, ttl_seconds: int):
        self.redis = client
        self.ttl_seconds = ttl_seconds

    def _key(self, identity: str) -> str:
        return f"{RedisService.PREFIX_RATE_LIMIT}{identity}"

    async def append(self, identity: str, attempt: Attempt) -> None:
        key = self._key(identity)
        await self.redis.zadd(key, {_encode_member(attempt): attempt.timestamp})
        await self.redis.expire(key, self.ttl_seconds)

    async def attempts(self, identity: str, since: Optional[float] = None) -> list[Attempt]:
        key = self._key(identity)
        if since is not None:
            await self.redis.zremrangebyscore(key, "-inf", f"({since}")
        members = await self.redis.zrange(key, 0, -1)
        return [_decode_member(m) for m in members]

    async def clear(self, identity: str) -> None:
        await self.redis.delete(self._key(identity))

    async def prune(self, before: float) -> int:
        removed = 0
        async for key in self.redis.scan_iter(match=f"{RedisService.PREFIX_RATE_LIMIT}*"):
            removed += await self.redis.zremrangebyscore(key, "-inf", f"({before}")
        return removed

    async def check_and_record(
        self,
        identity: str,
        attempt: Attempt,
        window_start: float,
        max_count: int,
        retain_after: Optional[float] = None,
    ) -> WindowState:
        args = [window_start, max_count, attempt.timestamp, _encode_member(attempt), self.ttl_seconds]
        if retain_after is not None:
            args.append(retain_after)
        recorded, count, oldest = await self.redis.eval(
            _CHECK_AND_RECORD_LUA, 1, self._key(identity), *args
        )
        oldest = _text(oldest)
        return WindowState(
            recorded=int(recorded) == 1,
            count=int(count),
            oldest=float(oldest) if oldest else None,
        )

    async def mark_failed(self, identity: str, attempt_id: str) -> bool:
        result = await self.redis.eval(_MARK_FAILED_LUA, 1, self._key(identity), attempt_id)
        return int(result) == 1


class TransferRateLimiter:
    """
    Per-identity transfer limits: a per-transfer USD cap and a count of
    successful transfers in a trailing window.

    Usage:
        limiter = await get_rate_limiter()
        result, reservation = await limiter.check_and_record(wallet, 25.0)
        if not result.allowed:
            raise RateLimitExceeded(result.reason, result.reset_time)
        ...
        await limiter.settle(wallet, reservation, success=tx_ok)
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        max_per_day: Optional[int] = None,
        max_amount_usd: Optional[float] = None,
        window_seconds: Optional[int] = None,
        retention_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self.store = store or InMemoryRateLimitStore()
        self.max_per_day = max_per_day if max_per_day is not None else settings.rate_limit_max_per_day
        self.max_amount_usd = (
            max_amount_usd if max_amount_usd is not None else settings.rate_limit_max_amount_usd
        )
        self.window_seconds = (
            window_seconds if window_seconds is not None else settings.rate_limit_window_seconds
        )
        self.retention_seconds = (
            retention_seconds
            if retention_seconds is not None
            else settings.rate_limit_retention_seconds
        )
        self.clock = clock

    @staticmethod
    def _identity(identity: str) -> str:
        return identity.strip().lower()

    def _amount_denial(self, amount: float) -> Optional[RateLimitResult]:
        if amount > self.max_amount_usd:
            get_metrics_collector().track_rate_limit_denial("amount_cap")
            return RateLimitResult(
                allowed=False,
                reason=f"Amount exceeds maximum of ${self.max_amount_usd:g} per transfer",
            )
        return None

    def _cap_denial(self, oldest: Optional[float]) -> RateLimitResult:
        get_metrics_collector().track_rate_limit_denial("daily_cap")
        return RateLimitResult(
            allowed=False,
            reason=f"Daily transfer limit reached ({self.max_per_day} per 24h)",
            attempts_remaining=0,
            reset_time=(oldest + self.window_seconds) if oldest is not None else None,
        )

    async def check_limit(self, identity: str, amount: float) -> RateLimitResult:
        """Non-mutating check; the amount cap applies regardless of history"""
        denial = self._amount_denial(amount)
        if denial:
            return denial

        now = self.clock()
        window_start = now - self.window_seconds
        history = await self.store.attempts(
            self._identity(identity), since=now - self.retention_seconds
        )
        counted = [
            a
            for a in history
            if a.success and a.timestamp >= window_start
        ]
        if len(counted) >= self.max_per_day:
            return self._cap_denial(min(a.timestamp for a in counted))

        return RateLimitResult(allowed=True, attempts_remaining=self.max_per_day - len(counted))

    async def record_attempt(self, identity: str, amount: float, success: bool) -> None:
        await self.store.append(
            self._identity(identity),
            Attempt(self.clock(), amount, success, uuid.uuid4().hex),
        )

    async def check_and_record(
        self, identity: str, amount: float
    ) -> tuple[RateLimitResult, Optional[str]]:
        """
        Atomically check and reserve a slot.

        The reservation counts as successful until ``settle`` marks it
        failed.

        Returns:
            (result, reservation id or None when denied)
        """
        denial = self._amount_denial(amount)
        if denial:
            return denial, None

        now = self.clock()
        attempt = Attempt(now, amount, True, uuid.uuid4().hex)
        state = await self.store.check_and_record(
            self._identity(identity),
            attempt,
            now - self.window_seconds,
            self.max_per_day,
            retain_after=now - self.retention_seconds,
        )
        if not state.recorded:
            return self._cap_denial(state.oldest), None

        remaining = self.max_per_day - state.count - 1
        return RateLimitResult(allowed=True, attempts_remaining=remaining), attempt.id

    async def settle(self, identity: str, reservation: str, success: bool) -> None:
        """Finalize a reservation; failures stop counting toward the cap"""
        if success:
            return
        if not await self.store.mark_failed(self._identity(identity), reservation):
            logger.warning(f"Rate limit reservation {reservation} not found for {identity}")

    async def reset(self, identity: str) -> None:
        await self.store.clear(self._identity(identity))

    async def get_history(self, identity: str) -> list[Attempt]:
        return await self.store.attempts(
            self._identity(identity), since=self.clock() - self.retention_seconds
        )

    async def cleanup(self) -> int:
        """Prune attempts past the retention window"""
        removed = await self.store.prune(self.clock() - self.retention_seconds)
        if removed:
            logger.info(f"Rate limiter cleanup removed {removed} attempts")
        return removed


_rate_limiter: Optional[TransferRateLimiter] = None


async def get_rate_limiter(settings: Optional[Settings] = None) -> TransferRateLimiter:
    """Get or create the process-wide limiter on the configured backend"""
    global _rate_limiter
    if _rate_limiter is None:
        settings = settings or get_settings()
        if settings.rate_limit_backend == "redis":
            client = await get_redis_client()
            store: RateLimitStore = RedisRateLimitStore(
                client, ttl_seconds=settings.rate_limit_retention_seconds
            )
        else:
            store = InMemoryRateLimitStore()
        _rate_limiter = TransferRateLimiter(store=store)
    return _rate_limiter
