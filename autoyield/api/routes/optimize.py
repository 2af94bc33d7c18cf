"""Optimization routes - opportunity discovery and advisory rebalance decisions"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ...core.dependencies import OpportunityServiceDep
from ...models.decision import RebalanceDecision
from ...models.opportunity import Position, RewardsSummary, YieldOpportunity
from ...services.decision_engine import evaluate_rebalance
from ...services.rewards import calculate_total_rewards

router = APIRouter(tags=["Optimize"])
logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


class OptimizeResponse(BaseModel):
    opportunities: list[YieldOpportunity]
    positions: list[Position] = []
    decision: Optional[RebalanceDecision] = None
    rewards: Optional[RewardsSummary] = None
    timestamp: int


@router.get("/opportunities", response_model=list[YieldOpportunity])
async def list_opportunities(
    opportunities: OpportunityServiceDep,
    refresh: bool = False,
):
    """All enabled protocols' opportunities, highest APY first"""
    return await opportunities.list_opportunities(use_cache=not refresh)


@router.get("/optimize", response_model=OptimizeResponse)
async def optimize(
    opportunities: OpportunityServiceDep,
    address: Optional[str] = Query(default=None, pattern=ADDRESS_PATTERN),
    balance: int = Query(default=0, ge=0, description="Idle stable balance, smallest unit"),
):
    """
    Advisory view: what the agent would do for ``address`` right now.

    Nothing is signed or submitted. Without an address only the
    opportunity list is returned.
    """
    catalogue = await opportunities.list_opportunities()
    now = int(time.time() * 1000)
    if address is None:
        return OptimizeResponse(opportunities=catalogue, timestamp=now)

    positions = await opportunities.list_positions(address)
    decision = evaluate_rebalance(positions, catalogue, balance)
    logger.info(f"Optimize for {address}: {decision.reason}")

    return OptimizeResponse(
        opportunities=catalogue,
        positions=positions,
        decision=decision,
        rewards=calculate_total_rewards(positions),
        timestamp=now,
    )
