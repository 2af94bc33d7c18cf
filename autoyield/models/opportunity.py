"""
Yield opportunity and position models.

Amounts are integers in the stable asset's smallest unit (6 decimals).
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Protocol(str, Enum):
    """Supported lending protocols"""
    MORPHO = "morpho"
    AAVE = "aave"
    MOONWELL = "moonwell"


class YieldOpportunity(BaseModel):
    """A place to park funds, snapshotted per fetch"""

    model_config = ConfigDict(frozen=True)

    id: str
    protocol: Protocol
    name: str
    asset: str = Field(..., description="Underlying asset address")
    address: str = Field(..., description="Vault or market address")
    apy: float = Field(..., description="Annualized yield as a decimal fraction")
    tvl: int = Field(default=0, ge=0, description="Total value locked, smallest unit")
    risk_score: float = Field(..., ge=0.0, le=1.0, description="0 = safest, 1 = riskiest")
    liquidity_depth: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Position(BaseModel):
    """A user's stake in one vault"""

    model_config = ConfigDict(frozen=True)

    protocol: Protocol
    vault_address: str
    shares: int = Field(..., ge=0)
    assets: int = Field(..., ge=0, description="Underlying amount, smallest unit")
    apy: float = Field(default=0.0, description="Effective APY at entry")
    entered_at: int = Field(default=0, description="Unix seconds")


class PositionRewards(BaseModel):
    """Estimated earnings for a single position"""

    total_earned: float
    earned_since_entry: float
    current_monthly_rate: float
    days_active: int


class RewardsSummary(BaseModel):
    """Aggregate estimated earnings across positions"""

    total_earned: float = 0.0
    monthly_rate: float = 0.0
    position_count: int = 0
