"""
Session authorization models.

A session is a scoped, expiring grant of signing authority to the
backend agent. The stored record only ever carries the encrypted key.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionType(str, Enum):
    """Session variants"""
    TRANSFER = "transfer"  # Stable-asset transfer only
    AGENT = "agent"  # Vault deposit/redeem/withdraw + scoped approve


class SessionAuthorization(BaseModel):
    """A stored session as read back from persistence"""

    model_config = ConfigDict(from_attributes=True)

    session_type: SessionType
    smart_account_address: str
    session_key_address: str
    encrypted_private_key: str
    expiry: int = Field(..., description="Unix seconds")
    created_at: int = Field(..., description="Unix seconds")
    approved_vaults: Optional[list[str]] = None
    delegation_proof: Optional[dict[str, Any]] = None


class SessionValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None


class SessionCreated(BaseModel):
    """The only data returned to a caller after session creation"""

    session_address: str
    expiry: int


class Permission(BaseModel):
    """
    One (target, selector) entry of a call policy.

    ``allowed_spenders`` restricts the first address argument (approve's
    spender) when set.
    """

    model_config = ConfigDict(frozen=True)

    target: str
    selector: str
    name: str
    allowed_spenders: Optional[tuple[str, ...]] = None


class CallPolicy(BaseModel):
    """The capability a session key is allowed to exercise"""

    permissions: list[Permission] = Field(default_factory=list)
    sudo: bool = False

    def allows(self, target: str, data: str) -> bool:
        """Whether a single call falls inside this policy"""
        if self.sudo:
            return True
        selector = data[:10].lower()
        for perm in self.permissions:
            if perm.target.lower() != target.lower() or perm.selector != selector:
                continue
            if perm.allowed_spenders is None:
                return True
            # First ABI word holds the spender, right-aligned
            spender = "0x" + data[10 + 24 : 10 + 64].lower()
            if spender in {s.lower() for s in perm.allowed_spenders}:
                return True
        return False


class SignedAuthorization(BaseModel):
    """An EIP-7702 authorization tuple signed by the account owner"""

    chain_id: int
    address: str = Field(..., description="Delegation target; zero address revokes")
    nonce: int = Field(..., ge=0)
    y_parity: int = Field(..., ge=0, le=1)
    r: str
    s: str
