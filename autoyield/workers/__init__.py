"""
Background workers for autonomous rebalancing.

The scheduler is stateless between runs: an external trigger calls
POST /api/v1/agent/cron and each call processes one batch. Per-user
locks in Redis keep concurrent triggers from double-executing.
"""

from .lifecycle import LockServiceUnavailable, UserLock, get_instance_id
from .rebalance_cron import AutonomousRebalancer, BatchSummary, UserOutcome

__all__ = [
    "AutonomousRebalancer",
    "BatchSummary",
    "LockServiceUnavailable",
    "UserLock",
    "UserOutcome",
    "get_instance_id",
]
