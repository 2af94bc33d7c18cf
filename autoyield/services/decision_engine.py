"""
Rebalance decision engine.

Pure functions mapping (current position, opportunities, idle balance,
cost model) to a RebalanceDecision. No I/O happens here.

Rules:
- Opportunities are ranked by risk-adjusted APY: apy * (1 - risk_score).
  Ties keep the first-seen opportunity.
- A current position's own risk is not tracked, so its APY is discounted
  by a flat factor (0.85 by default).
- Rebalance iff net gain is strictly greater than the threshold (0.005).
  A net gain exactly at the threshold does not rebalance.
- Only the first position is considered when several are held.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from ..core.config import Settings, get_settings
from ..models.decision import RebalanceDecision
from ..models.opportunity import Position, YieldOpportunity

logger = logging.getLogger(__name__)

STABLE_UNIT = 10**6


@dataclass(frozen=True)
class CostEstimate:
    """Costs of one move expressed against the moved amount"""
    gas_cost_usd: float
    slippage: float
    total_cost_fraction: float


class CostModel(ABC):
    """Strategy for pricing a deposit or a full rebalance"""

    name: str = ""

    @abstractmethod
    def estimate(self, amount: int, exiting: bool) -> CostEstimate:
        """
        Args:
            amount: Amount moved, smallest unit
            exiting: True when an existing position is redeemed first
        """


class SponsoredCostModel(CostModel):
    """
    Gas is paid by the relay's paymaster, so the user only bears slippage.

    Exiting adds a second slippage leg plus a buffer for the rounding
    between the redemption preview and actual execution.
    """

    name = "sponsored"

    def __init__(
        self,
        slippage: float = 0.001,
        exit_slippage: float = 0.001,
        execution_buffer: float = 0.0005,
    ):
        self.slippage = slippage
        self.exit_slippage = exit_slippage
        self.execution_buffer = execution_buffer

    def estimate(self, amount: int, exiting: bool) -> CostEstimate:
        total = self.slippage
        if exiting:
            total += self.exit_slippage + self.execution_buffer
        return CostEstimate(gas_cost_usd=0.0, slippage=self.slippage, total_cost_fraction=total)


class GasInclusiveCostModel(CostModel):
    """
    User pays gas: a fixed USD estimate per transaction, converted to a
    fraction of the moved amount. A rebalance pays it twice.
    """

    name = "gas_inclusive"

    def __init__(
        self,
        gas_cost_usd: float = 0.50,
        slippage: float = 0.001,
        exit_slippage: float = 0.001,
    ):
        self.gas_cost_usd = gas_cost_usd
        self.slippage = slippage
        self.exit_slippage = exit_slippage

    def estimate(self, amount: int, exiting: bool) -> CostEstimate:
        amount_usd = amount / STABLE_UNIT
        gas_fraction = self.gas_cost_usd / amount_usd if amount_usd > 0 else 0.0
        total = gas_fraction + self.slippage
        if exiting:
            total += self.exit_slippage
        return CostEstimate(
            gas_cost_usd=self.gas_cost_usd * (2 if exiting else 1),
            slippage=self.slippage,
            total_cost_fraction=total,
        )


def get_cost_model(settings: Optional[Settings] = None) -> CostModel:
    """Build the cost model named by COST_MODEL"""
    settings = settings or get_settings()
    if settings.cost_model == "gas_inclusive":
        return GasInclusiveCostModel(
            gas_cost_usd=settings.estimated_gas_cost_usd,
            slippage=settings.slippage_fraction,
            exit_slippage=settings.exit_slippage_fraction,
        )
    return SponsoredCostModel(
        slippage=settings.slippage_fraction,
        exit_slippage=settings.exit_slippage_fraction,
        execution_buffer=settings.execution_buffer_fraction,
    )


def risk_adjusted_apy(opportunity: YieldOpportunity) -> float:
    """APY discounted by risk: risk 0 keeps full APY, risk 1 yields zero."""
    return opportunity.apy * (1 - opportunity.risk_score)


def select_best_opportunity(
    opportunities: Sequence[YieldOpportunity],
) -> Optional[YieldOpportunity]:
    """Highest risk-adjusted APY; first-seen wins ties."""
    best = None
    best_apy = 0.0
    for opp in opportunities:
        adjusted = risk_adjusted_apy(opp)
        if best is None or adjusted > best_apy:
            best, best_apy = opp, adjusted
    return best


def _normalize_position(
    current: Union[Position, Sequence[Position], None],
) -> Optional[Position]:
    # TODO: evaluate every held position instead of the first once
    # multi-vault rebalances are supported by the execution builder
    if current is None:
        return None
    if isinstance(current, Position):
        return current
    return current[0] if len(current) > 0 else None


def _is_same_target(position: Position, opportunity: YieldOpportunity) -> bool:
    return (
        position.protocol == opportunity.protocol
        or position.vault_address.lower() == opportunity.address.lower()
    )


def _cost_in_units(gas_cost_usd: float) -> int:
    return int(gas_cost_usd * STABLE_UNIT)


def evaluate_rebalance(
    current_positions: Union[Position, Sequence[Position], None],
    opportunities: Sequence[YieldOpportunity],
    available_balance: int,
    cost_model: Optional[CostModel] = None,
    threshold: Optional[float] = None,
    current_risk_discount: Optional[float] = None,
) -> RebalanceDecision:
    """
    Decide whether moving funds is worth it.

    Args:
        current_positions: A position, a list of positions, or None
        opportunities: Candidate opportunities (may be empty)
        available_balance: Idle stable-asset balance, smallest unit
        cost_model: Pricing strategy; defaults to the configured one
        threshold: Minimum net gain; defaults to MIN_REBALANCE_THRESHOLD
        current_risk_discount: Flat multiplier applied to the current APY

    Returns:
        RebalanceDecision whose reason is always non-empty
    """
    settings = get_settings()
    if cost_model is None:
        cost_model = get_cost_model(settings)
    if threshold is None:
        threshold = settings.min_rebalance_threshold
    if current_risk_discount is None:
        current_risk_discount = settings.current_position_risk_discount
    # A negative gain never rebalances, whatever the configured threshold
    bar = max(threshold, 0.0)

    current = _normalize_position(current_positions)

    best = select_best_opportunity(opportunities)
    if best is None:
        return RebalanceDecision(
            should_rebalance=False,
            from_position=current,
            reason="No opportunities available",
        )

    best_adjusted = risk_adjusted_apy(best)

    if current is None:
        if available_balance <= 0:
            return RebalanceDecision(
                should_rebalance=False,
                to_opportunity=best,
                reason="No balance to deposit",
            )

        costs = cost_model.estimate(available_balance, exiting=False)
        net_apy = best_adjusted - costs.total_cost_fraction
        should = net_apy > bar
        reason = (
            f"Deposit into {best.name} for {net_apy * 100:.2f}% net APY"
            if should
            else f"Net APY {net_apy * 100:.2f}% below {threshold * 100:.1f}% threshold"
        )
        return RebalanceDecision(
            should_rebalance=should,
            to_opportunity=best,
            estimated_cost=_cost_in_units(costs.gas_cost_usd),
            estimated_slippage=costs.slippage,
            net_gain=net_apy,
            reason=reason,
        )

    if _is_same_target(current, best):
        return RebalanceDecision(
            should_rebalance=False,
            from_position=current,
            to_opportunity=best,
            reason=f"Already optimal: position in {current.protocol.value} is the best risk-adjusted option",
        )

    current_adjusted = current.apy * current_risk_discount
    costs = cost_model.estimate(current.assets, exiting=True)
    net_gain = best_adjusted - current_adjusted - costs.total_cost_fraction
    should = net_gain > bar

    if should:
        reason = (
            f"Rebalance from {current.protocol.value} to {best.name}: "
            f"+{net_gain * 100:.2f}% net APY"
        )
    else:
        reason = (
            f"Net gain {net_gain * 100:.2f}% below {threshold * 100:.1f}% threshold"
        )

    logger.debug(
        f"Rebalance evaluation: current={current_adjusted:.4f} best={best_adjusted:.4f} "
        f"cost={costs.total_cost_fraction:.4f} net={net_gain:.4f} ({cost_model.name})"
    )

    return RebalanceDecision(
        should_rebalance=should,
        from_position=current,
        to_opportunity=best,
        estimated_cost=_cost_in_units(costs.gas_cost_usd),
        estimated_slippage=costs.slippage,
        net_gain=net_gain,
        reason=reason,
    )
