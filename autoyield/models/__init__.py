"""Domain models for opportunities, decisions, sessions and actions"""

from .action import AgentAction, AgentActionStatus, AgentActionType
from .decision import RebalanceDecision
from .opportunity import (
    Position,
    PositionRewards,
    Protocol,
    RewardsSummary,
    YieldOpportunity,
)
from .session import (
    CallPolicy,
    Permission,
    SessionAuthorization,
    SessionCreated,
    SessionType,
    SessionValidation,
    SignedAuthorization,
)

__all__ = [
    "AgentAction",
    "AgentActionStatus",
    "AgentActionType",
    "RebalanceDecision",
    "Position",
    "PositionRewards",
    "Protocol",
    "RewardsSummary",
    "YieldOpportunity",
    "CallPolicy",
    "Permission",
    "SessionAuthorization",
    "SessionCreated",
    "SessionType",
    "SessionValidation",
    "SignedAuthorization",
]
