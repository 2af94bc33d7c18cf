"""
Tables: users, session_authorizations, agent_actions.

Session signing keys are encrypted with CryptoService before storage;
the plaintext key never reaches a column.
"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class UserDB(Base):
    """
    A wallet owner and their automation preferences.

    The scheduler selects users with auto-optimize enabled, a registered
    agent and a stored delegation.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    wallet_address: Mapped[str] = mapped_column(
        String(42),
        unique=True,
        nullable=False,
        index=True
    )

    # Automation preferences
    auto_optimize_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    agent_registered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Signed EIP-7702 authorization supplied at registration
    authorization_7702: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    # Relationships
    sessions: Mapped[list["SessionAuthorizationDB"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan"
    )
    actions: Mapped[list["AgentActionDB"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index(
            "ix_users_cron_eligible",
            "auto_optimize_enabled",
            "agent_registered",
            postgresql_where=text(
                "auto_optimize_enabled = true AND agent_registered = true "
                "AND authorization_7702 IS NOT NULL"
            ),
        ),
    )

    def __repr__(self) -> str:
        return f"<User {self.wallet_address}>"


class SessionAuthorizationDB(Base):
    """
    Delegated signing authority for one (user, session type).

    SECURITY: encrypted_private_key is AES-256-GCM ciphertext produced by
    CryptoService. Rows are written in a single statement so a public
    address never exists without its encrypted key.
    """
    __tablename__ = "session_authorizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    session_type: Mapped[str] = mapped_column(String(20), nullable=False)  # transfer, agent

    smart_account_address: Mapped[str] = mapped_column(String(42), nullable=False)
    session_key_address: Mapped[str] = mapped_column(String(42), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)

    # Agent sessions only
    approved_vaults: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    delegation_proof: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    expiry: Mapped[int] = mapped_column(BigInteger, nullable=False)  # Unix seconds
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )

    user: Mapped["UserDB"] = relationship(back_populates="sessions")

    __table_args__ = (
        UniqueConstraint("user_id", "session_type", name="uq_session_user_type"),
    )

    def __repr__(self) -> str:
        return f"<SessionAuthorization {self.session_type} {self.session_key_address}>"


class AgentActionDB(Base):
    """
    Append-only audit log of autonomous and user-triggered operations.

    Only status, tx_hash, error and completed_at are ever filled in after
    creation.
    """
    __tablename__ = "agent_actions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)  # rebalance, transfer, optimization_check
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    from_protocol: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_protocol: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    # Smallest stable-asset unit, stored as text to keep full uint256 range
    amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # "metadata" is reserved on declarative classes
    action_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    user: Mapped["UserDB"] = relationship(back_populates="actions")

    __table_args__ = (
        Index("ix_agent_actions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AgentAction {self.action_type} {self.status}>"
