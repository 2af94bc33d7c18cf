"""Session authorization repository

At most one row per (user, session type); writing a new session
replaces the previous one in place.
"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import SessionAuthorizationDB


class SessionAuthorizationRepository:
    """Repository for SessionAuthorization persistence"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self,
        user_id: uuid.UUID,
        session_type: str,
    ) -> Optional[SessionAuthorizationDB]:
        """Get the live session for a user and type"""
        result = await self.session.execute(
            select(SessionAuthorizationDB).where(
                SessionAuthorizationDB.user_id == user_id,
                SessionAuthorizationDB.session_type == session_type,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        user_id: uuid.UUID,
        session_type: str,
        smart_account_address: str,
        session_key_address: str,
        encrypted_private_key: str,
        expiry: int,
        approved_vaults: Optional[list[str]] = None,
        delegation_proof: Optional[dict] = None,
    ) -> SessionAuthorizationDB:
        """
        Insert or supersede the session for (user, type).

        All key fields are assigned together before the flush. A concurrent
        insert for the same pair surfaces as IntegrityError from the flush;
        callers roll back and retry, which then takes the update path.
        """
        row = await self.get(user_id, session_type)
        if row is None:
            row = SessionAuthorizationDB(user_id=user_id, session_type=session_type)
            self.session.add(row)

        row.smart_account_address = smart_account_address.lower()
        row.session_key_address = session_key_address
        row.encrypted_private_key = encrypted_private_key
        row.expiry = expiry
        row.approved_vaults = approved_vaults
        row.delegation_proof = delegation_proof
        row.created_at = datetime.now(UTC)

        await self.session.flush()
        await self.session.refresh(row)
        return row

    async def delete(self, user_id: uuid.UUID, session_type: str) -> bool:
        """Delete the session. Returns True if a row was removed."""
        result = await self.session.execute(
            delete(SessionAuthorizationDB).where(
                SessionAuthorizationDB.user_id == user_id,
                SessionAuthorizationDB.session_type == session_type,
            )
        )
        return result.rowcount > 0
