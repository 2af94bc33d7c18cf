"""Estimated earnings for yield positions.

Assumes a constant APY over the holding period. Historical APY changes,
in-vault compounding and later top-ups are not modelled.
"""

import time
from typing import Optional, Sequence

from ..models.opportunity import Position, PositionRewards, RewardsSummary

SECONDS_PER_DAY = 86400
SECONDS_PER_YEAR = 365.25 * SECONDS_PER_DAY


def calculate_accrued_rewards(position: Position, now: Optional[float] = None) -> PositionRewards:
    now = time.time() if now is None else now
    elapsed = max(0.0, now - position.entered_at)

    assets_usd = position.assets / 1e6
    total_earned = assets_usd * position.apy * (elapsed / SECONDS_PER_YEAR)

    return PositionRewards(
        total_earned=total_earned,
        earned_since_entry=total_earned,
        current_monthly_rate=assets_usd * position.apy / 12,
        days_active=int(elapsed // SECONDS_PER_DAY),
    )


def calculate_total_rewards(
    positions: Sequence[Position],
    now: Optional[float] = None,
) -> RewardsSummary:
    summary = RewardsSummary(position_count=len(positions))
    for position in positions:
        rewards = calculate_accrued_rewards(position, now)
        summary.total_earned += rewards.total_earned
        summary.monthly_rate += rewards.current_monthly_rate
    return summary
