"""User repository for database operations"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import UserDB


class UserRepository:
    """Repository for User CRUD operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[UserDB]:
        """Get user by ID"""
        result = await self.session.execute(
            select(UserDB).where(UserDB.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_wallet(self, wallet_address: str) -> Optional[UserDB]:
        """Get user by wallet address (case-insensitive)"""
        result = await self.session.execute(
            select(UserDB).where(UserDB.wallet_address == wallet_address.lower())
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, wallet_address: str) -> UserDB:
        """Return the user for a wallet, creating it on first sight"""
        user = await self.get_by_wallet(wallet_address)
        if user:
            return user

        user = UserDB(wallet_address=wallet_address.lower())
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)
        return user

    async def set_auto_optimize(self, user_id: uuid.UUID, enabled: bool) -> bool:
        """Toggle autonomous optimization. Returns False if user not found."""
        result = await self.session.execute(
            update(UserDB)
            .where(UserDB.id == user_id)
            .values(auto_optimize_enabled=enabled)
        )
        return result.rowcount > 0

    async def set_agent_registered(
        self,
        user_id: uuid.UUID,
        registered: bool,
        authorization_7702: Optional[dict] = None,
    ) -> bool:
        """Mark agent registration and store (or clear) the signed delegation"""
        result = await self.session.execute(
            update(UserDB)
            .where(UserDB.id == user_id)
            .values(
                agent_registered=registered,
                authorization_7702=authorization_7702 if registered else None,
            )
        )
        return result.rowcount > 0

    async def list_cron_candidates(
        self,
        limit: int = 500,
        after: Optional[tuple[datetime, uuid.UUID]] = None,
    ) -> list[UserDB]:
        """
        One page of users the scheduler should look at.

        Any user with either flag set. Eligibility is decided per user so
        half-registered users show up as skipped in the batch summary.
        Pages are keyed on (created_at, id); pass the last row's pair as
        ``after`` to fetch the next page.
        """
        stmt = select(UserDB).where(
            or_(
                UserDB.auto_optimize_enabled.is_(True),
                UserDB.agent_registered.is_(True),
            )
        )
        if after is not None:
            created_at, user_id = after
            stmt = stmt.where(
                or_(
                    UserDB.created_at > created_at,
                    and_(UserDB.created_at == created_at, UserDB.id > user_id),
                )
            )
        result = await self.session.execute(
            stmt.order_by(UserDB.created_at, UserDB.id).limit(limit)
        )
        return list(result.scalars().all())
