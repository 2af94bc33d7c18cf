"""
Autonomous rebalance scheduler.

One ``run_batch`` call per trigger. Users run concurrently (bounded by
MAX_CONCURRENT_USERS); each user's pipeline is strictly ordered:

    eligibility -> lock -> session -> oracle gate -> positions and
    opportunities -> decision -> build calls -> execute -> audit log

A failure or skip for one user never affects another. Only failing to
load the candidate list aborts the batch.
"""

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..core.security import CryptoService, get_crypto_service
from ..db.database import AsyncSessionLocal
from ..db.repositories import AgentActionRepository, UserRepository
from ..models.action import AgentActionStatus, AgentActionType
from ..models.session import SessionType
from ..monitoring.metrics import get_metrics_collector
from ..monitoring.sentry import capture_exception
from ..services.chain_client import erc20_balance
from ..services.decision_engine import evaluate_rebalance
from ..services.delegated_executor import DelegatedExecutor
from ..services.opportunity_service import OpportunityService, filter_to_vaults
from ..services.oracle_gate import OracleGate
from ..services.protocols import AdapterRegistry
from ..services.session_service import SessionService, decrypt_signer, validate_session
from .lifecycle import LockServiceUnavailable, UserLock

logger = logging.getLogger(__name__)

SKIP_AUTO_OPTIMIZE_DISABLED = "auto-optimize disabled"
SKIP_NOT_REGISTERED = "agent not registered"
SKIP_IN_PROGRESS = "rebalance already in progress"
SKIP_NO_VAULTS = "no approved vaults, re-registration required"
LOCK_UNAVAILABLE = "lock service unavailable"
PIPELINE_TIMED_OUT = "pipeline timed out"

CANDIDATE_PAGE_SIZE = 500


class UserOutcome(BaseModel):
    address: str
    action: Literal["rebalanced", "skipped", "error"]
    reason: str
    tx_hash: Optional[str] = None
    simulated: bool = False
    duration_ms: int = 0


class BatchSummary(BaseModel):
    processed: int = 0
    rebalanced: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[UserOutcome] = Field(default_factory=list)
    duration_ms: int = 0


@dataclass(frozen=True)
class Candidate:
    """Detached snapshot of a user row"""
    user_id: uuid.UUID
    wallet: str
    auto_optimize_enabled: bool
    agent_registered: bool
    has_authorization: bool


class AutonomousRebalancer:
    """
    Usage:
        summary = await AutonomousRebalancer().run_batch()
    """

    def __init__(
        self,
        session_factory: Callable = AsyncSessionLocal,
        opportunity_service: Optional[OpportunityService] = None,
        oracle_gate: Optional[OracleGate] = None,
        executor: Optional[DelegatedExecutor] = None,
        user_lock: Optional[UserLock] = None,
        balance_reader: Callable = erc20_balance,
        crypto: Optional[CryptoService] = None,
        settings: Optional[Settings] = None,
        registry: Optional[AdapterRegistry] = None,
        page_size: int = CANDIDATE_PAGE_SIZE,
    ):
        self.session_factory = session_factory
        self.page_size = page_size
        self.settings = settings or get_settings()
        self.crypto = crypto or get_crypto_service()
        self.opportunity_service = opportunity_service or OpportunityService()
        self.registry = registry or AdapterRegistry()
        self.oracle_gate = oracle_gate or OracleGate(settings=self.settings)
        self.user_lock = user_lock or UserLock()
        self.balance_reader = balance_reader
        self.executor = executor or DelegatedExecutor(
            signer_loader=functools.partial(decrypt_signer, crypto=self.crypto),
            settings=self.settings,
        )

    # ==================== Batch ====================

    async def load_candidates(self) -> list[Candidate]:
        """
        Every candidate user, read page by page.

        Raises:
            Exception: persistence unreachable; the caller aborts the batch
        """
        candidates: list[Candidate] = []
        after = None
        async with self.session_factory() as db:
            users = UserRepository(db)
            while True:
                page = await users.list_cron_candidates(limit=self.page_size, after=after)
                candidates.extend(
                    Candidate(
                        user_id=u.id,
                        wallet=u.wallet_address,
                        auto_optimize_enabled=u.auto_optimize_enabled,
                        agent_registered=u.agent_registered,
                        has_authorization=u.authorization_7702 is not None,
                    )
                    for u in page
                )
                if len(page) < self.page_size:
                    return candidates
                after = (page[-1].created_at, page[-1].id)

    async def run_batch(self) -> BatchSummary:
        started = time.monotonic()
        candidates = await self.load_candidates()
        logger.info(f"Cron batch starting: {len(candidates)} candidate users")

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_users)
        outcomes = await asyncio.gather(
            *(self._run_user(c, semaphore) for c in candidates)
        )

        summary = BatchSummary(
            processed=len(outcomes),
            rebalanced=sum(1 for o in outcomes if o.action == "rebalanced"),
            skipped=sum(1 for o in outcomes if o.action == "skipped"),
            errors=sum(1 for o in outcomes if o.action == "error"),
            details=list(outcomes),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            f"Cron batch done: processed={summary.processed} rebalanced={summary.rebalanced} "
            f"skipped={summary.skipped} errors={summary.errors} in {summary.duration_ms}ms"
        )
        return summary

    async def _run_user(self, candidate: Candidate, semaphore: asyncio.Semaphore) -> UserOutcome:
        async with semaphore:
            started = time.monotonic()
            try:
                outcome = await asyncio.wait_for(
                    self.process_user(candidate),
                    timeout=self.settings.user_pipeline_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(f"Pipeline timed out for {candidate.wallet}")
                outcome = UserOutcome(
                    address=candidate.wallet, action="error", reason=PIPELINE_TIMED_OUT
                )
            except Exception as e:
                logger.error(f"Pipeline failed for {candidate.wallet}: {e}", exc_info=True)
                capture_exception(e, tags={"component": "cron", "wallet": candidate.wallet})
                outcome = UserOutcome(
                    address=candidate.wallet, action="error", reason=str(e) or type(e).__name__
                )

            outcome.duration_ms = int((time.monotonic() - started) * 1000)
            get_metrics_collector().track_user_outcome(
                "simulated" if outcome.simulated else outcome.action
            )
            return outcome

    # ==================== Per-user pipeline ====================

    async def process_user(self, candidate: Candidate) -> UserOutcome:
        if not candidate.auto_optimize_enabled:
            return await self._skip(candidate, SKIP_AUTO_OPTIMIZE_DISABLED)
        if not candidate.agent_registered or not candidate.has_authorization:
            return await self._skip(candidate, SKIP_NOT_REGISTERED)

        try:
            async with self.user_lock.hold(candidate.wallet) as acquired:
                if not acquired:
                    logger.info(f"Skipping {candidate.wallet}: {SKIP_IN_PROGRESS}")
                    return UserOutcome(
                        address=candidate.wallet, action="skipped", reason=SKIP_IN_PROGRESS
                    )
                return await self._pipeline(candidate)
        except LockServiceUnavailable:
            logger.error(f"Not processing {candidate.wallet}: {LOCK_UNAVAILABLE}")
            return UserOutcome(address=candidate.wallet, action="error", reason=LOCK_UNAVAILABLE)

    async def _skip(self, candidate: Candidate, reason: str, **metadata) -> UserOutcome:
        logger.info(f"Skipping {candidate.wallet}: {reason}")
        async with self.session_factory() as db:
            await AgentActionRepository(db).create(
                user_id=candidate.user_id,
                action_type=AgentActionType.OPTIMIZATION_CHECK.value,
                status=AgentActionStatus.SKIPPED.value,
                metadata={"reason": reason, **metadata},
            )
            await db.commit()
        return UserOutcome(address=candidate.wallet, action="skipped", reason=reason)

    async def _pipeline(self, candidate: Candidate) -> UserOutcome:
        wallet = candidate.wallet

        async with self.session_factory() as db:
            session = await SessionService(db, self.crypto, self.settings).get_session(
                wallet, SessionType.AGENT
            )
        if session is None:
            return await self._skip(candidate, SKIP_NOT_REGISTERED)

        validation = validate_session(session, SessionType.AGENT)
        if not validation.valid:
            return await self._skip(candidate, validation.reason)
        if not session.approved_vaults:
            return await self._skip(candidate, SKIP_NO_VAULTS)

        verdict = await self.oracle_gate.check()
        if not verdict.safe:
            return await self._skip(candidate, f"oracle unsafe: {verdict.reason}")

        account = session.smart_account_address
        vaults = session.approved_vaults
        opportunities = filter_to_vaults(
            await self.opportunity_service.list_opportunities(), vaults
        )
        allowed = {v.lower() for v in vaults}
        # Only positions the session key can redeem are candidates to move
        positions = [
            p
            for p in await self.opportunity_service.list_positions(account)
            if p.vault_address.lower() in allowed
        ]
        balance = await self.balance_reader(self.settings.stable_asset_address, account)

        decision = evaluate_rebalance(positions, opportunities, balance)
        if not decision.should_rebalance:
            return await self._skip(
                candidate, decision.reason, net_gain=decision.net_gain
            )

        target = decision.to_opportunity
        source = decision.from_position
        if source is not None:
            calls = self.registry.build_move(
                source, target, account, deposit_amount=self._redeemable(source.assets)
            )
            amount = source.assets
        else:
            calls = self.registry.build_entry(target, balance, account)
            amount = balance

        async with self.session_factory() as db:
            actions = AgentActionRepository(db)
            action = await actions.create(
                user_id=candidate.user_id,
                action_type=AgentActionType.REBALANCE.value,
                from_protocol=source.protocol.value if source else None,
                to_protocol=target.protocol.value,
                amount=amount,
                metadata={
                    "reason": decision.reason,
                    "net_gain": decision.net_gain,
                    "from_vault": source.vault_address if source else None,
                    "to_vault": target.address,
                    "calls": len(calls),
                },
            )
            await db.commit()
            action_id = action.id

        try:
            result = await self.executor.execute(session, calls, AgentActionType.REBALANCE.value)
        except asyncio.CancelledError:
            # Budget expired mid-execution; the row must not stay pending
            await self._complete(action_id, AgentActionStatus.FAILED, error=PIPELINE_TIMED_OUT)
            raise
        except Exception as e:
            await self._complete(action_id, AgentActionStatus.FAILED, error=str(e) or type(e).__name__)
            raise

        if result.simulated:
            status = AgentActionStatus.SIMULATED
        elif result.success:
            status = AgentActionStatus.SUCCESS
        else:
            status = AgentActionStatus.FAILED

        await self._complete(action_id, status, tx_hash=result.tx_hash, error=result.error)

        if not result.success:
            logger.warning(f"Rebalance failed for {wallet} ({result.error_kind}): {result.error}")
            return UserOutcome(address=wallet, action="error", reason=result.error or "execution failed")

        logger.info(f"Rebalanced {wallet}: {decision.reason} tx={result.tx_hash}")
        return UserOutcome(
            address=wallet,
            action="rebalanced",
            reason=decision.reason,
            tx_hash=result.tx_hash,
            simulated=result.simulated,
        )

    def _redeemable(self, assets: int) -> int:
        """Position value less the execution buffer, for exact-amount deposits"""
        return assets - int(assets * self.settings.execution_buffer_fraction)

    async def _complete(
        self,
        action_id: uuid.UUID,
        status: AgentActionStatus,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            await AgentActionRepository(db).complete(
                action_id, status.value, tx_hash=tx_hash, error=error
            )
            await db.commit()
