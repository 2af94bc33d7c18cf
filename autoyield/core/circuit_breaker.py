"""
Fail-fast guards around the agent's remote dependencies.

Three kinds of breaker exist, all backed by pybreaker:

- ``relay``: the sponsored bundler/paymaster. On-chain reverts and an
  exhausted sponsor budget are answers from a healthy relay, so they are
  excluded and never trip it.
- ``oracle``: sequencer uptime and price feed reads.
- ``opportunity_source_<protocol>``: one per protocol adapter, so a broken
  Morpho API cannot hide Aave or Moonwell results.

An open breaker raises CircuitBreakerOpen before the wrapped call runs; the
owning boundary turns that into its normal failure value (unsafe verdict,
empty list, failed ExecutionResult).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Optional

import pybreaker

from .errors import OperationReverted, SponsorBudgetExhausted

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_PYBREAKER_STATES = {
    pybreaker.STATE_CLOSED: CircuitState.CLOSED,
    pybreaker.STATE_OPEN: CircuitState.OPEN,
    pybreaker.STATE_HALF_OPEN: CircuitState.HALF_OPEN,
}


class CircuitBreakerOpen(Exception):
    """The dependency behind ``breaker_name`` is considered down."""

    def __init__(self, breaker_name: str, remaining_timeout: float = 0):
        self.breaker_name = breaker_name
        self.remaining_timeout = remaining_timeout
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry after {remaining_timeout:.1f}s"
        )


@dataclass(frozen=True)
class BreakerPolicy:
    fail_max: int
    reset_timeout: float
    exclude: tuple[type[Exception], ...] = ()


RELAY_POLICY = BreakerPolicy(
    fail_max=5,
    reset_timeout=60,
    exclude=(OperationReverted, SponsorBudgetExhausted),
)
ORACLE_POLICY = BreakerPolicy(fail_max=3, reset_timeout=30)
OPPORTUNITY_SOURCE_POLICY = BreakerPolicy(fail_max=3, reset_timeout=60)


@dataclass
class CircuitBreakerStats:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_calls: int
    last_failure_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "last_failure_time": iso(self.last_failure_time),
            "opened_at": iso(self.opened_at),
        }


class _TransitionLog(pybreaker.CircuitBreakerListener):
    """Records when a breaker opened and last failed; logs every transition."""

    def __init__(self, name: str):
        self.name = name
        self.opened_at: Optional[datetime] = None
        self.last_failure_time: Optional[datetime] = None

    def state_change(self, cb, old_state, new_state) -> None:
        target = _PYBREAKER_STATES.get(getattr(new_state, "name", None), CircuitState.HALF_OPEN)
        if target is CircuitState.OPEN:
            self.opened_at = datetime.now(UTC)
            logger.warning(
                f"Circuit breaker '{self.name}' opened after {cb.fail_counter} consecutive failures"
            )
        else:
            if target is CircuitState.CLOSED:
                self.opened_at = None
            logger.warning(f"Circuit breaker '{self.name}' is now {target.value}")

    def failure(self, cb, exc: Exception) -> None:
        self.last_failure_time = datetime.now(UTC)
        logger.debug(f"Circuit breaker '{self.name}' counted {type(exc).__name__}")


class AsyncCircuitBreaker:
    """
    Awaits the guarded callable itself and feeds the outcome to a pybreaker
    instance, which owns the counting and the state machine.
    """

    DEFAULT_FAIL_MAX = 5
    DEFAULT_RESET_TIMEOUT = 30

    # Process-wide registry keyed by breaker name
    _breakers: dict[str, "AsyncCircuitBreaker"] = {}

    def __init__(
        self,
        name: str,
        fail_max: int = DEFAULT_FAIL_MAX,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        exclude: tuple[type[Exception], ...] = (),
    ):
        self.name = name
        self.listener = _TransitionLog(name)
        self._breaker = pybreaker.CircuitBreaker(
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            exclude=list(exclude),
            listeners=[self.listener],
            name=name,
        )
        self._total_calls = 0
        self._success_count = 0

    @classmethod
    def from_policy(cls, name: str, policy: BreakerPolicy) -> "AsyncCircuitBreaker":
        return cls.get(name, policy.fail_max, policy.reset_timeout, policy.exclude)

    @property
    def state(self) -> CircuitState:
        raw = getattr(self._breaker.current_state, "name", self._breaker.current_state)
        return _PYBREAKER_STATES.get(raw, CircuitState.HALF_OPEN)

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self.state,
            failure_count=self._breaker.fail_counter,
            success_count=self._success_count,
            total_calls=self._total_calls,
            last_failure_time=self.listener.last_failure_time,
            opened_at=self.listener.opened_at,
        )

    def seconds_until_retry(self) -> float:
        opened_at = self.listener.opened_at
        if opened_at is None:
            return float(self._breaker.reset_timeout)
        return max(0.0, self._breaker.reset_timeout - (time.time() - opened_at.timestamp()))

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run ``func`` unless the breaker is open.

        Coroutine functions are awaited; plain callables are called inline.
        Raises CircuitBreakerOpen while open, otherwise whatever ``func``
        raises.
        """
        self._total_calls += 1

        if self.is_open:
            wait = self.seconds_until_retry()
            if wait > 0:
                raise CircuitBreakerOpen(self.name, wait)

        try:
            outcome = func(*args, **kwargs)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        except Exception as e:
            self._feed(e)
            raise

        self._success_count += 1
        self._feed(None)
        return outcome

    def _feed(self, exc: Optional[Exception]) -> None:
        """Replay an outcome through pybreaker so it updates its counters."""

        def replay():
            if exc is not None:
                raise exc

        try:
            self._breaker.call(replay)
        except Exception:
            # The caller already has the original exception; pybreaker may
            # also raise CircuitBreakerError when this failure trips it
            pass

    def reset(self) -> None:
        self._breaker.close()
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    @classmethod
    def get(
        cls,
        name: str,
        fail_max: int = DEFAULT_FAIL_MAX,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        exclude: tuple[type[Exception], ...] = (),
    ) -> "AsyncCircuitBreaker":
        """Registered breaker for ``name``, created on first use."""
        breaker = cls._breakers.get(name)
        if breaker is None:
            breaker = cls._breakers[name] = cls(name, fail_max, reset_timeout, exclude)
        return breaker

    @classmethod
    def get_all_stats(cls) -> list[CircuitBreakerStats]:
        return [breaker.stats for breaker in cls._breakers.values()]

    @classmethod
    def reset_all(cls) -> None:
        for breaker in cls._breakers.values():
            breaker.reset()


def get_relay_circuit_breaker() -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker.from_policy("relay", RELAY_POLICY)


def get_oracle_circuit_breaker() -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker.from_policy("oracle", ORACLE_POLICY)


def get_opportunity_source_circuit_breaker(protocol: str) -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker.from_policy(
        f"opportunity_source_{protocol}", OPPORTUNITY_SOURCE_POLICY
    )


def get_circuit_breaker_health() -> dict:
    """Summary served by the health endpoints: healthy while nothing is open."""
    all_stats = AsyncCircuitBreaker.get_all_stats()
    open_count = sum(1 for s in all_stats if s.state is CircuitState.OPEN)

    return {
        "healthy": open_count == 0,
        "total_breakers": len(all_stats),
        "open_breakers": open_count,
        "breakers": [s.to_dict() for s in all_stats],
    }
