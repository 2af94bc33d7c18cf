"""
Oracle safety gate.

Stateless check run before every autonomous rebalance:

1. Sequencer liveness (L2 uptime feed). Down, or up for less than the
   grace period, is unsafe and short-circuits: the price feed is not read.
2. Stable-asset price feed. Older than the heartbeat is "stale"; off peg
   by more than the threshold is "depegged".

Read errors never escape: they become an unsafe verdict carrying the
error message.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from web3 import AsyncWeb3

from ..core.circuit_breaker import get_oracle_circuit_breaker
from ..core.config import Settings, get_settings
from ..core.errors import OracleReadError
from ..monitoring.metrics import get_metrics_collector
from .chain_client import AGGREGATOR_V3_ABI, checksum, get_web3

logger = logging.getLogger(__name__)

REASON_SEQUENCER_DOWN = "sequencer down"
REASON_GRACE_PERIOD = "recently restarted, within grace period"
REASON_STALE = "stale"
REASON_DEPEGGED = "depegged"


@dataclass(frozen=True)
class RoundData:
    answer: int
    started_at: int
    updated_at: int


@dataclass(frozen=True)
class OracleVerdict:
    safe: bool
    reason: Optional[str] = None
    price: Optional[float] = None
    updated_at: Optional[int] = None


class FeedReader:
    """Reads Chainlink AggregatorV3 feeds over web3"""

    def __init__(self, w3: Optional[AsyncWeb3] = None):
        self._w3 = w3
        self._decimals: dict[str, int] = {}

    def _contract(self, feed: str):
        w3 = self._w3 or get_web3()
        return w3.eth.contract(address=checksum(feed), abi=AGGREGATOR_V3_ABI)

    async def latest_round(self, feed: str) -> RoundData:
        try:
            _, answer, started_at, updated_at, _ = (
                await self._contract(feed).functions.latestRoundData().call()
            )
        except Exception as e:
            raise OracleReadError(f"latestRoundData failed for {feed}: {e}") from e
        return RoundData(answer=answer, started_at=started_at, updated_at=updated_at)

    async def decimals(self, feed: str) -> int:
        key = feed.lower()
        if key not in self._decimals:
            try:
                self._decimals[key] = await self._contract(feed).functions.decimals().call()
            except Exception as e:
                raise OracleReadError(f"decimals failed for {feed}: {e}") from e
        return self._decimals[key]


class OracleGate:
    """
    Usage:
        verdict = await OracleGate().check()
        if not verdict.safe:
            skip(verdict.reason)
    """

    def __init__(
        self,
        reader: Optional[FeedReader] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader or FeedReader()
        self.settings = settings or get_settings()
        self.clock = clock

    async def check_sequencer(self) -> Optional[str]:
        """Unsafe reason, or None when the sequencer is trusted"""
        feed = self.settings.sequencer_uptime_feed_address
        if not feed:
            return None

        round_data = await self.reader.latest_round(feed)
        # 0 = up, 1 = down; startedAt is when the current status began
        if round_data.answer != 0:
            return REASON_SEQUENCER_DOWN

        since_up = self.clock() - round_data.started_at
        if since_up < self.settings.oracle_grace_period_seconds:
            return REASON_GRACE_PERIOD
        return None

    async def check_price(self) -> OracleVerdict:
        feed = self.settings.price_feed_address
        round_data = await self.reader.latest_round(feed)
        decimals = await self.reader.decimals(feed)

        price = round_data.answer / 10**decimals
        age = self.clock() - round_data.updated_at

        if age > self.settings.oracle_staleness_seconds:
            return OracleVerdict(False, REASON_STALE, price, round_data.updated_at)

        peg = self.settings.oracle_expected_peg
        if abs(price - peg) / peg > self.settings.oracle_depeg_threshold:
            return OracleVerdict(False, REASON_DEPEGGED, price, round_data.updated_at)

        return OracleVerdict(True, None, price, round_data.updated_at)

    async def _evaluate(self) -> OracleVerdict:
        reason = await self.check_sequencer()
        if reason is not None:
            return OracleVerdict(safe=False, reason=reason)
        return await self.check_price()

    async def check(self) -> OracleVerdict:
        """Full gate; never raises"""
        breaker = get_oracle_circuit_breaker()
        try:
            verdict = await breaker.call(self._evaluate)
        except Exception as e:
            logger.warning(f"Oracle check failed: {e}")
            verdict = OracleVerdict(safe=False, reason=str(e) or type(e).__name__)

        if not verdict.safe:
            logger.info(f"Oracle gate unsafe: {verdict.reason}")
        get_metrics_collector().track_oracle_verdict(verdict.safe, verdict.reason)
        return verdict
