"""Agent activity log enums and API shapes"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class AgentActionType(str, Enum):
    REBALANCE = "rebalance"
    TRANSFER = "transfer"
    OPTIMIZATION_CHECK = "optimization_check"


class AgentActionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    SIMULATED = "simulated"


class AgentAction(BaseModel):
    """Read model for one audit log row"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action_type: AgentActionType
    status: AgentActionStatus
    from_protocol: Optional[str] = None
    to_protocol: Optional[str] = None
    amount: Optional[str] = None
    tx_hash: Optional[str] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("action_metadata", "metadata"),
    )
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
