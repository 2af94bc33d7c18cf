"""Repository layer for database operations"""

from .action import AgentActionRepository
from .session import SessionAuthorizationRepository
from .user import UserRepository

__all__ = [
    "AgentActionRepository",
    "SessionAuthorizationRepository",
    "UserRepository",
]
