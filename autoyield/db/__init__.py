"""Persistence: async engine, sessions and the three ORM tables."""

from .database import (
    AsyncSessionLocal,
    get_db,
    init_db,
    ping_database,
    session_scope,
)
from .models import (
    AgentActionDB,
    Base,
    SessionAuthorizationDB,
    UserDB,
)

__all__ = [
    "AsyncSessionLocal",
    "Base",
    "get_db",
    "init_db",
    "ping_database",
    "session_scope",
    "AgentActionDB",
    "SessionAuthorizationDB",
    "UserDB",
]
