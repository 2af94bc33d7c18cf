"""
Delegated executor.

Submits an ordered call batch on behalf of an account using its session
key, and waits for a terminal receipt. Every outcome, including relay
outages and reverts, comes back as an ExecutionResult; nothing raises
past ``execute``.

Flow:
    simulation? -> synthetic success, no signing or network
    policy pre-check -> decrypt signer -> delegation check (eth_getCode)
    -> submit (retry transient errors, relay breaker) -> wait for receipt
"""

import asyncio
import logging
import secrets
import time
from typing import Callable, Optional

from ..core.circuit_breaker import CircuitBreakerOpen, get_relay_circuit_breaker
from ..core.config import Settings, get_settings, is_simulation_mode
from ..core.errors import (
    DeploymentRequired,
    ReceiptTimeout,
    RelayError,
    SessionError,
)
from ..core.retry_utils import retry_with_backoff
from ..models.session import CallPolicy, SessionAuthorization, SessionType
from ..monitoring.metrics import get_metrics_collector
from .chain_client import get_code
from .execution_builder import Call
from .execution_result import ExecutionResult
from .relay_client import RelayClient
from .session_service import build_call_policy

logger = logging.getLogger(__name__)

# EIP-7702 delegation designator: 0xef0100 || 20-byte address
DELEGATION_PREFIX = "0xef0100"
DELEGATION_CODE_LENGTH = 2 + 2 * 23


def is_delegated(code: str) -> bool:
    code = code.lower()
    return code.startswith(DELEGATION_PREFIX) and len(code) == DELEGATION_CODE_LENGTH


def synthetic_tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


class DelegatedExecutor:
    """
    Usage:
        executor = DelegatedExecutor(signer_loader=session_service.load_signer)
        result = await executor.execute(session, calls)
    """

    def __init__(
        self,
        signer_loader: Callable,
        relay: Optional[RelayClient] = None,
        code_reader: Callable = get_code,
        settings: Optional[Settings] = None,
    ):
        self.signer_loader = signer_loader
        self.relay = relay or RelayClient()
        self.code_reader = code_reader
        self.settings = settings or get_settings()

    async def _authorization_for(self, session: SessionAuthorization) -> Optional[dict]:
        """Delegation proof to attach, or None when the account is already delegated"""
        code = await self.code_reader(session.smart_account_address)
        if is_delegated(code):
            return None
        if not session.delegation_proof:
            raise DeploymentRequired(
                f"{session.smart_account_address} has no delegation and no proof was stored"
            )
        logger.info(f"First use for {session.smart_account_address}: attaching delegation")
        return session.delegation_proof

    async def _submit(self, session, calls, signer, policy, authorization) -> str:
        breaker = get_relay_circuit_breaker()
        success, bundle_id, error = await retry_with_backoff(
            breaker.call,
            self.relay.send_calls,
            session.smart_account_address,
            calls,
            signer,
            policy,
            authorization,
            max_attempts=self.settings.relay_submit_attempts,
            base_delay=1.0,
            max_delay=10.0,
            retry_on=(RelayError,),
        )
        if not success:
            raise error
        return bundle_id

    async def execute(
        self,
        session: SessionAuthorization,
        calls: list[Call],
        action_type: str = "rebalance",
    ) -> ExecutionResult:
        # Read per call so a flag flipped mid-batch takes effect
        if is_simulation_mode():
            tx_hash = synthetic_tx_hash()
            logger.info(
                f"[SIMULATION] {action_type} for {session.smart_account_address}: "
                f"{len(calls)} calls, tx {tx_hash}"
            )
            get_metrics_collector().track_execution(action_type, True, 0.0, simulated=True)
            return ExecutionResult(success=True, tx_hash=tx_hash, simulated=True)

        if not calls:
            return ExecutionResult.failed("No calls to execute", "invalid_batch")

        started = time.monotonic()
        try:
            policy = build_call_policy(
                SessionType(session.session_type),
                session.approved_vaults,
                self.settings.stable_asset_address,
                allow_legacy_sudo=self.settings.allow_legacy_sudo,
            )
            for call in calls:
                if not policy.allows(call.target, call.data):
                    return ExecutionResult.failed(
                        f"Call {call.selector} on {call.target} outside session policy",
                        "policy_violation",
                    )

            signer = self.signer_loader(session)
            authorization = await self._authorization_for(session)
            bundle_id = await self._submit(session, calls, signer, policy, authorization)

            try:
                status = await asyncio.wait_for(
                    self.relay.wait_for_receipt(bundle_id),
                    timeout=self.settings.receipt_timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise ReceiptTimeout(
                    f"No receipt for {bundle_id} after {self.settings.receipt_timeout_seconds}s"
                ) from None

            result = ExecutionResult(
                success=True,
                tx_hash=status.tx_hash,
                gas_used=status.gas_used,
                bundle_id=bundle_id,
            )
            logger.info(
                f"{action_type} executed for {session.smart_account_address}: {status.tx_hash}"
            )
        except RelayError as e:
            logger.warning(f"{action_type} failed for {session.smart_account_address}: {e}")
            result = ExecutionResult.failed(str(e), e.kind)
        except CircuitBreakerOpen as e:
            result = ExecutionResult.failed(str(e), "relay_unavailable")
        except SessionError as e:
            result = ExecutionResult.failed(e.message, "session_invalid")
        except Exception as e:
            logger.error(
                f"Unexpected {action_type} error for {session.smart_account_address}: {e}",
                exc_info=True,
            )
            result = ExecutionResult.failed(str(e) or type(e).__name__, "unknown")

        get_metrics_collector().track_execution(
            action_type, result.success, time.monotonic() - started
        )
        return result
