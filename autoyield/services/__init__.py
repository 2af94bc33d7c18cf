"""Services module - Business logic and external integrations"""

from .decision_engine import evaluate_rebalance, get_cost_model
from .delegated_executor import DelegatedExecutor
from .execution_result import ExecutionResult
from .opportunity_service import OpportunityService, get_opportunity_service
from .oracle_gate import OracleGate, OracleVerdict
from .rate_limiter import TransferRateLimiter, get_rate_limiter
from .redis_service import RedisService, get_redis_service
from .relay_client import RelayClient, get_relay_client
from .session_service import SessionService, validate_session
from .transfer_service import TransferService, validate_transfer_params

__all__ = [
    "DelegatedExecutor",
    "ExecutionResult",
    "OpportunityService",
    "OracleGate",
    "OracleVerdict",
    "RedisService",
    "RelayClient",
    "SessionService",
    "TransferRateLimiter",
    "TransferService",
    "evaluate_rebalance",
    "get_cost_model",
    "get_opportunity_service",
    "get_rate_limiter",
    "get_redis_service",
    "get_relay_client",
    "validate_session",
    "validate_transfer_params",
]
