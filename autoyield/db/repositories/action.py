"""Agent action (audit log) repository"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AgentActionDB

TERMINAL_STATUSES = frozenset({"success", "failed", "skipped", "simulated"})


class AgentActionRepository:
    """Append-only access to the agent activity log"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: uuid.UUID,
        action_type: str,
        status: str = "pending",
        from_protocol: Optional[str] = None,
        to_protocol: Optional[str] = None,
        amount: Optional[int] = None,
        tx_hash: Optional[str] = None,
        metadata: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> AgentActionDB:
        """Append an action. Terminal statuses are stamped completed immediately."""
        action = AgentActionDB(
            user_id=user_id,
            action_type=action_type,
            status=status,
            from_protocol=from_protocol,
            to_protocol=to_protocol,
            amount=str(amount) if amount is not None else None,
            tx_hash=tx_hash,
            action_metadata=metadata or {},
            error=error,
            completed_at=datetime.now(UTC) if status in TERMINAL_STATUSES else None,
        )
        self.session.add(action)
        await self.session.flush()
        await self.session.refresh(action)
        return action

    async def complete(
        self,
        action_id: uuid.UUID,
        status: str,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[AgentActionDB]:
        """
        Fill in the terminal status of a pending action.

        Raises:
            ValueError: If the action already reached a terminal status
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        result = await self.session.execute(
            select(AgentActionDB).where(AgentActionDB.id == action_id)
        )
        action = result.scalar_one_or_none()
        if action is None:
            return None
        if action.status in TERMINAL_STATUSES:
            raise ValueError(f"Action {action_id} already completed as {action.status}")

        action.status = status
        action.tx_hash = tx_hash
        action.error = error
        action.completed_at = datetime.now(UTC)
        await self.session.flush()
        return action

    async def list_by_user(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
        since: Optional[datetime] = None,
        action_type: Optional[str] = None,
    ) -> list[AgentActionDB]:
        """Most recent actions first"""
        query = select(AgentActionDB).where(AgentActionDB.user_id == user_id)
        if since is not None:
            query = query.where(AgentActionDB.created_at >= since)
        if action_type:
            query = query.where(AgentActionDB.action_type == action_type)
        query = query.order_by(AgentActionDB.created_at.desc()).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())
