"""Rebalance decision model"""

from typing import Optional

from pydantic import BaseModel, Field

from .opportunity import Position, YieldOpportunity


class RebalanceDecision(BaseModel):
    """
    Output of the decision engine.

    Ephemeral: recomputed on every evaluation and only persisted as part
    of an audit record.
    """

    should_rebalance: bool
    from_position: Optional[Position] = None
    to_opportunity: Optional[YieldOpportunity] = None
    estimated_cost: int = Field(default=0, ge=0, description="Gas cost charged to the user, smallest unit")
    estimated_slippage: float = Field(default=0.0, ge=0.0)
    net_gain: float = Field(default=0.0, description="APY-equivalent improvement after costs")
    reason: str = Field(..., min_length=1, description="Human-readable justification")
