"""
Manual stable-asset transfers through a transfer-only session.

Validation and rate limiting happen before anything is signed. The rate
limit slot is reserved atomically and released (marked failed) if the
transfer does not go through, so failures never count toward the cap.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel

from ..core.config import get_settings
from ..core.errors import RateLimitExceeded
from ..db.repositories import AgentActionRepository, UserRepository
from ..models.action import AgentActionStatus, AgentActionType
from ..models.session import SessionType
from .delegated_executor import DelegatedExecutor
from .execution_builder import build_transfer_calls
from .execution_result import ExecutionResult
from .rate_limiter import TransferRateLimiter
from .session_service import SessionService

logger = logging.getLogger(__name__)

_RECIPIENT_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class TransferValidation(BaseModel):
    valid: bool
    error: Optional[str] = None


def parse_usd_amount(amount: Any) -> Optional[Decimal]:
    """Decimal USD amount from a string or number, None if unparseable"""
    if isinstance(amount, bool) or amount is None:
        return None
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def to_units(amount: Decimal, decimals: int = 6) -> int:
    """USD amount to the stable asset's smallest unit, truncating dust"""
    return int(amount.scaleb(decimals).to_integral_value(rounding="ROUND_DOWN"))


def validate_transfer_params(
    recipient: Optional[str],
    amount: Any,
    session: Any,
    max_amount_usd: Optional[float] = None,
) -> TransferValidation:
    """
    Checked in order: recipient present, recipient format, amount > 0,
    amount within the per-transfer cap, session present.
    """
    if max_amount_usd is None:
        max_amount_usd = get_settings().rate_limit_max_amount_usd

    if not recipient:
        return TransferValidation(valid=False, error="Recipient address is required")
    if not isinstance(recipient, str) or not _RECIPIENT_RE.match(recipient):
        return TransferValidation(valid=False, error="Invalid recipient address format")

    value = parse_usd_amount(amount)
    if value is None or value <= 0:
        return TransferValidation(valid=False, error="Amount must be greater than 0")
    if value > Decimal(str(max_amount_usd)):
        return TransferValidation(
            valid=False, error=f"Amount exceeds maximum of ${max_amount_usd:g} per transfer"
        )

    if not session:
        return TransferValidation(
            valid=False, error="No transfer session. Please create a session first."
        )
    return TransferValidation(valid=True)


class TransferService:
    """
    Usage:
        result = await TransferService(db, sessions, limiter, executor).transfer(owner, to, "25.00")
    """

    def __init__(
        self,
        db,
        sessions: SessionService,
        limiter: TransferRateLimiter,
        executor: DelegatedExecutor,
    ):
        self.db = db
        self.sessions = sessions
        self.limiter = limiter
        self.executor = executor
        self.settings = get_settings()

    async def transfer(self, owner: str, recipient: str, amount: str) -> ExecutionResult:
        """
        Raises:
            ValueError: parameter validation failed (message is user-facing)
            SessionNotFound / SessionInvalid: no usable transfer session
            RateLimitExceeded: per-transfer or daily cap hit
        """
        session = await self.sessions.get_session(owner, SessionType.TRANSFER)
        validation = validate_transfer_params(recipient, amount, session)
        if not validation.valid:
            raise ValueError(validation.error)
        session = await self.sessions.require_valid_session(owner, SessionType.TRANSFER)

        value = parse_usd_amount(amount)
        units = to_units(value, self.settings.stable_asset_decimals)
        if units <= 0:
            raise ValueError("Amount must be greater than 0")
        calls = build_transfer_calls(self.settings.stable_asset_address, recipient, units)

        limit, reservation = await self.limiter.check_and_record(owner, float(value))
        if not limit.allowed:
            raise RateLimitExceeded(limit.reason, limit.reset_time)

        try:
            result = await self.executor.execute(session, calls, AgentActionType.TRANSFER.value)
        except BaseException:
            # Cancelled mid-flight
            await self.limiter.settle(owner, reservation, success=False)
            raise
        await self.limiter.settle(owner, reservation, result.success)

        user = await UserRepository(self.db).get_or_create(owner)
        if result.simulated:
            status = AgentActionStatus.SIMULATED
        elif result.success:
            status = AgentActionStatus.SUCCESS
        else:
            status = AgentActionStatus.FAILED
        await AgentActionRepository(self.db).create(
            user_id=user.id,
            action_type=AgentActionType.TRANSFER.value,
            status=status.value,
            amount=units,
            tx_hash=result.tx_hash,
            metadata={"recipient": recipient.lower(), "amount_usd": str(value)},
            error=result.error,
        )
        await self.db.commit()

        logger.info(
            f"Transfer {status.value} for {owner}: {value} USD to {recipient} tx={result.tx_hash}"
        )
        return result
