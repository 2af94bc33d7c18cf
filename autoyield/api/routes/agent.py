"""
Agent routes - autonomous rebalancing.

The cron trigger is authenticated with the shared CRON_SECRET; every
other endpoint acts on the wallet in the caller's JWT.
"""

import logging
import time
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Header, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from ...core.dependencies import (
    AdapterRegistryDep,
    CryptoDep,
    CurrentWalletDep,
    DbSessionDep,
    RelayClientDep,
)
from ...core.errors import (
    ErrorCode,
    RelayError,
    SessionError,
    app_error_to_http,
    auth_error,
    create_http_exception,
    database_unavailable_error,
)
from ...core.security import verify_cron_secret
from ...db.repositories import AgentActionRepository, UserRepository
from ...models.action import AgentAction
from ...models.session import SessionType, SignedAuthorization
from ...monitoring.metrics import get_metrics_collector
from ...services.opportunity_service import get_opportunity_service
from ...services.rate_limiter import get_rate_limiter
from ...services.session_service import SessionService, authorization_to_dict, validate_session
from ...workers.rebalance_cron import AutonomousRebalancer, BatchSummary

router = APIRouter(prefix="/agent", tags=["Agent"])
logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
VaultAddress = Annotated[str, Field(pattern=ADDRESS_PATTERN)]


# ==================== Request / Response Models ====================


class RegisterRequest(BaseModel):
    approved_vaults: list[VaultAddress] = Field(..., min_length=1)
    authorization: Optional[SignedAuthorization] = Field(
        default=None, description="Owner-signed EIP-7702 delegation, attached on first use"
    )


class RegisterResponse(BaseModel):
    session_address: str
    expiry: int
    approved_vaults: list[str]
    delegation_stored: bool


class AutoOptimizeRequest(BaseModel):
    enabled: bool


class SessionStatus(BaseModel):
    valid: bool
    reason: Optional[str] = None
    session_address: Optional[str] = None
    expiry: Optional[int] = None
    approved_vaults: Optional[list[str]] = None


class AgentStatusResponse(BaseModel):
    wallet_address: str
    auto_optimize_enabled: bool = False
    agent_registered: bool = False
    has_delegation: bool = False
    agent_session: Optional[SessionStatus] = None
    transfer_session: Optional[SessionStatus] = None


class RevokeOnChainResponse(BaseModel):
    bundle_id: str
    revoked: bool = True


async def build_rebalancer() -> AutonomousRebalancer:
    service = await get_opportunity_service()
    return AutonomousRebalancer(opportunity_service=service, registry=service.registry)


# ==================== Cron ====================


@router.post("/cron", response_model=BatchSummary)
async def run_cron(
    authorization: Annotated[Optional[str], Header()] = None,
):
    """
    Run one autonomous rebalance batch over all candidate users.

    Per-user failures are reported in ``details``; the batch only fails
    when the user list cannot be loaded.
    """
    if not verify_cron_secret(authorization):
        logger.warning("Rejected cron trigger with invalid secret")
        raise auth_error(ErrorCode.AUTH_INVALID_CRON_SECRET)

    collector = get_metrics_collector()
    started = time.monotonic()
    try:
        rebalancer = await build_rebalancer()
        summary = await rebalancer.run_batch()
    except (SQLAlchemyError, OSError) as e:
        collector.track_cron_run("db_unavailable", time.monotonic() - started)
        raise database_unavailable_error(e)

    collector.track_cron_run("success", time.monotonic() - started)

    try:
        limiter = await get_rate_limiter()
        await limiter.cleanup()
    except Exception as e:
        logger.warning(f"Rate limiter cleanup failed: {e}")
    return summary


# ==================== Session lifecycle ====================


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register_agent(
    data: RegisterRequest,
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
    registry: AdapterRegistryDep,
):
    """
    Create (or replace) the agent session scoped to ``approved_vaults``.

    The session key can only call ERC-4626 vault functions, so addresses
    of other configured markets (Aave pool, Moonwell mToken) are refused.
    The optional authorization is the owner's signed EIP-7702 delegation;
    it is verified here and attached to the first sponsored batch.
    """
    rejected = registry.non_vault_markets(data.approved_vaults)
    if rejected:
        raise create_http_exception(
            ErrorCode.VALIDATION_ERROR,
            f"Not ERC-4626 vaults: {', '.join(a.lower() for a in rejected)}",
            status_code=status.HTTP_400_BAD_REQUEST,
            log_error=False,
        )

    service = SessionService(db, crypto)
    proof = None
    try:
        if data.authorization is not None:
            service.verify_delegation(wallet, data.authorization)
            proof = authorization_to_dict(data.authorization)
        created = await service.create_session(
            wallet,
            SessionType.AGENT,
            approved_vaults=data.approved_vaults,
            delegation_proof=proof,
        )
    except SessionError as e:
        raise app_error_to_http(e)

    return RegisterResponse(
        session_address=created.session_address,
        expiry=created.expiry,
        approved_vaults=[v.lower() for v in data.approved_vaults],
        delegation_stored=proof is not None,
    )


@router.delete("/session")
async def revoke_agent_session(
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
):
    """Soft revoke: drop the stored session key. On-chain delegation stays."""
    removed = await SessionService(db, crypto).revoke_session(wallet, SessionType.AGENT)
    return {"revoked": removed}


@router.post("/revoke-onchain", response_model=RevokeOnChainResponse)
async def revoke_agent_onchain(
    data: SignedAuthorization,
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
    relay: RelayClientDep,
):
    """Relay an owner-signed delegation to the zero address, then soft revoke"""
    try:
        bundle_id = await SessionService(db, crypto).revoke_on_chain(wallet, data, relay)
    except SessionError as e:
        raise app_error_to_http(e)
    except RelayError as e:
        raise create_http_exception(
            ErrorCode.RELAY_ERROR,
            "Revocation could not be submitted",
            status_code=status.HTTP_502_BAD_GATEWAY,
            internal_error=e,
        )
    return RevokeOnChainResponse(bundle_id=bundle_id)


@router.put("/auto-optimize")
async def set_auto_optimize(
    data: AutoOptimizeRequest,
    db: DbSessionDep,
    wallet: CurrentWalletDep,
):
    users = UserRepository(db)
    user = await users.get_or_create(wallet)
    await users.set_auto_optimize(user.id, data.enabled)
    await db.commit()
    logger.info(f"Auto-optimize {'enabled' if data.enabled else 'disabled'} for {wallet}")
    return {"auto_optimize_enabled": data.enabled}


# ==================== Status ====================


async def _session_status(
    service: SessionService, wallet: str, session_type: SessionType
) -> Optional[SessionStatus]:
    session = await service.get_session(wallet, session_type)
    if session is None:
        return None
    validation = validate_session(session, session_type)
    return SessionStatus(
        valid=validation.valid,
        reason=validation.reason,
        session_address=session.session_key_address,
        expiry=session.expiry,
        approved_vaults=session.approved_vaults,
    )


@router.get("/status", response_model=AgentStatusResponse)
async def get_agent_status(
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
):
    user = await UserRepository(db).get_by_wallet(wallet)
    if user is None:
        return AgentStatusResponse(wallet_address=wallet)

    service = SessionService(db, crypto)
    return AgentStatusResponse(
        wallet_address=user.wallet_address,
        auto_optimize_enabled=user.auto_optimize_enabled,
        agent_registered=user.agent_registered,
        has_delegation=user.authorization_7702 is not None,
        agent_session=await _session_status(service, wallet, SessionType.AGENT),
        transfer_session=await _session_status(service, wallet, SessionType.TRANSFER),
    )


@router.get("/actions", response_model=list[AgentAction])
async def list_agent_actions(
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    limit: int = Query(default=50, ge=1, le=200),
    since: Optional[datetime] = None,
    action_type: Optional[str] = None,
):
    """Activity log, newest first"""
    user = await UserRepository(db).get_by_wallet(wallet)
    if user is None:
        return []
    actions = await AgentActionRepository(db).list_by_user(
        user.id, limit=limit, since=since, action_type=action_type
    )
    return [AgentAction.model_validate(a) for a in actions]

