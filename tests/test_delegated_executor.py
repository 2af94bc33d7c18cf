"""
Tests for the delegated executor.

Tests cover:
- Simulation mode (no signing, no network)
- Session policy pre-check
- EIP-7702 delegation check and first-use authorization
- Relay failures mapped to structured error kinds
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from autoyield.core.config import Settings
from autoyield.core.errors import (
    OperationReverted,
    RelayError,
    RelayUnavailable,
    SessionInvalid,
    SponsorBudgetExhausted,
)
from autoyield.models.session import SessionAuthorization, SessionType
from autoyield.services.delegated_executor import DelegatedExecutor, is_delegated
from autoyield.services.execution_builder import build_deposit_calls, transfer_call
from autoyield.services.relay_client import CallsStatus

from conftest import DELEGATE, RECIPIENT, USDC, VAULT_A, VAULT_C

ACCOUNT = "0x" + "ab" * 20
DESIGNATED = "0xef0100" + DELEGATE[2:].lower()
TX_HASH = "0x" + "12" * 32


def _session(session_type=SessionType.AGENT, vaults=(VAULT_A,), proof=None) -> SessionAuthorization:
    return SessionAuthorization(
        session_type=session_type,
        smart_account_address=ACCOUNT,
        session_key_address="0x" + "cd" * 20,
        encrypted_private_key="ciphertext",
        expiry=int(time.time()) + 3600,
        created_at=int(time.time()),
        approved_vaults=list(vaults) if vaults is not None else None,
        delegation_proof=proof,
    )


@pytest.fixture
def relay():
    relay = MagicMock()
    relay.send_calls = AsyncMock(return_value="bundle-1")
    relay.wait_for_receipt = AsyncMock(
        return_value=CallsStatus(id="bundle-1", status=200, tx_hash=TX_HASH, gas_used=21000)
    )
    return relay


@pytest.fixture
def signer():
    signer = MagicMock()
    signer.address = "0x" + "cd" * 20
    return signer


def _executor(relay, signer, code=DESIGNATED, **settings) -> DelegatedExecutor:
    values = dict(relay_submit_attempts=1, receipt_timeout_seconds=5.0)
    values.update(settings)
    return DelegatedExecutor(
        signer_loader=MagicMock(return_value=signer),
        relay=relay,
        code_reader=AsyncMock(return_value=code),
        settings=Settings(**values),
    )


def _deposit():
    return build_deposit_calls(VAULT_A, USDC, 100 * 10**6, ACCOUNT)


class TestDesignator:

    def test_delegated_code(self):
        assert is_delegated(DESIGNATED) is True
        assert is_delegated(DESIGNATED.upper().replace("0X", "0x")) is True

    def test_empty_code(self):
        assert is_delegated("0x") is False

    def test_regular_contract_code(self):
        assert is_delegated("0x6080604052") is False


class TestSimulation:

    @pytest.mark.asyncio
    async def test_simulation_skips_everything(self, monkeypatch, relay, signer):
        monkeypatch.setenv("AGENT_SIMULATION_MODE", "true")
        executor = _executor(relay, signer)

        result = await executor.execute(_session(), _deposit())

        assert result.success is True
        assert result.simulated is True
        assert result.tx_hash.startswith("0x") and len(result.tx_hash) == 66
        relay.send_calls.assert_not_called()
        executor.signer_loader.assert_not_called()
        executor.code_reader.assert_not_called()

    @pytest.mark.asyncio
    async def test_simulation_read_per_call(self, monkeypatch, relay, signer):
        executor = _executor(relay, signer)

        monkeypatch.setenv("AGENT_SIMULATION_MODE", "1")
        first = await executor.execute(_session(), _deposit())
        monkeypatch.setenv("AGENT_SIMULATION_MODE", "false")
        second = await executor.execute(_session(), _deposit())

        assert first.simulated is True
        assert second.simulated is False
        relay.send_calls.assert_awaited_once()


class TestExecution:

    @pytest.mark.asyncio
    async def test_success(self, relay, signer):
        executor = _executor(relay, signer)
        calls = _deposit()

        result = await executor.execute(_session(), calls)

        assert result.success is True
        assert result.tx_hash == TX_HASH
        assert result.bundle_id == "bundle-1"
        assert result.gas_used == 21000
        account, sent_calls, sent_signer, policy, authorization = relay.send_calls.call_args.args
        assert account == ACCOUNT
        assert sent_calls == calls
        assert sent_signer is signer
        assert policy.sudo is False
        assert authorization is None

    @pytest.mark.asyncio
    async def test_empty_batch(self, relay, signer):
        result = await _executor(relay, signer).execute(_session(), [])
        assert result.success is False
        assert result.error_kind == "invalid_batch"

    @pytest.mark.asyncio
    async def test_policy_violation_never_signs(self, relay, signer):
        executor = _executor(relay, signer)
        calls = build_deposit_calls(VAULT_C, USDC, 10, ACCOUNT)

        result = await executor.execute(_session(), calls)

        assert result.success is False
        assert result.error_kind == "policy_violation"
        executor.signer_loader.assert_not_called()
        relay.send_calls.assert_not_called()

    @pytest.mark.asyncio
    async def test_transfer_session_cannot_deposit(self, relay, signer):
        result = await _executor(relay, signer).execute(
            _session(SessionType.TRANSFER, vaults=None), _deposit()
        )
        assert result.error_kind == "policy_violation"

    @pytest.mark.asyncio
    async def test_transfer_session_transfers(self, relay, signer):
        result = await _executor(relay, signer).execute(
            _session(SessionType.TRANSFER, vaults=None),
            [transfer_call(USDC, RECIPIENT, 5)],
            action_type="transfer",
        )
        assert result.success is True

    @pytest.mark.asyncio
    async def test_agent_session_without_vaults(self, relay, signer):
        result = await _executor(relay, signer).execute(_session(vaults=None), _deposit())
        assert result.success is False
        assert result.error_kind == "session_invalid"

    @pytest.mark.asyncio
    async def test_undecryptable_key(self, relay, signer):
        executor = _executor(relay, signer)
        executor.signer_loader.side_effect = SessionInvalid("Session key could not be decrypted")

        result = await executor.execute(_session(), _deposit())

        assert result.error_kind == "session_invalid"
        relay.send_calls.assert_not_called()


class TestDelegation:

    @pytest.mark.asyncio
    async def test_first_use_attaches_proof(self, relay, signer):
        proof = {"address": DELEGATE, "chainId": "0x14a34"}
        executor = _executor(relay, signer, code="0x")

        result = await executor.execute(_session(proof=proof), _deposit())

        assert result.success is True
        assert relay.send_calls.call_args.args[4] == proof

    @pytest.mark.asyncio
    async def test_undelegated_without_proof(self, relay, signer):
        executor = _executor(relay, signer, code="0x")

        result = await executor.execute(_session(), _deposit())

        assert result.success is False
        assert result.error_kind == "deployment_required"
        relay.send_calls.assert_not_called()


class TestRelayFailures:

    @pytest.mark.asyncio
    async def test_relay_unavailable(self, relay, signer):
        relay.send_calls.side_effect = RelayUnavailable("Relay returned HTTP 503")

        result = await _executor(relay, signer).execute(_session(), _deposit())

        assert result.success is False
        assert result.error_kind == "relay_unavailable"

    @pytest.mark.asyncio
    async def test_sponsor_budget(self, relay, signer):
        relay.send_calls.side_effect = SponsorBudgetExhausted("paymaster: sponsor budget exhausted")
        result = await _executor(relay, signer).execute(_session(), _deposit())
        assert result.error_kind == "sponsor_budget_exhausted"

    @pytest.mark.asyncio
    async def test_reverted_on_chain(self, relay, signer):
        relay.wait_for_receipt.side_effect = OperationReverted("Batch bundle-1 reverted")
        result = await _executor(relay, signer).execute(_session(), _deposit())
        assert result.error_kind == "reverted"

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, relay, signer):
        relay.send_calls.side_effect = [RelayUnavailable("Relay unreachable: reset"), "bundle-2"]

        with patch("autoyield.core.retry_utils.asyncio.sleep", new=AsyncMock()):
            result = await _executor(relay, signer, relay_submit_attempts=3).execute(
                _session(), _deposit()
            )

        assert result.success is True
        assert relay.send_calls.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_errors_not_retried(self, relay, signer):
        relay.send_calls.side_effect = SponsorBudgetExhausted("sponsor budget exhausted")

        with patch("autoyield.core.retry_utils.asyncio.sleep", new=AsyncMock()):
            await _executor(relay, signer, relay_submit_attempts=3).execute(_session(), _deposit())

        assert relay.send_calls.await_count == 1

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, relay, signer):
        async def never(bundle_id):
            await asyncio.sleep(10)

        relay.wait_for_receipt = never

        result = await _executor(relay, signer, receipt_timeout_seconds=0.01).execute(
            _session(), _deposit()
        )

        assert result.error_kind == "receipt_timeout"

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, relay, signer):
        relay.send_calls.side_effect = RelayUnavailable("Relay returned HTTP 503")
        executor = _executor(relay, signer)

        for _ in range(5):
            await executor.execute(_session(), _deposit())
        relay.send_calls.reset_mock()

        result = await executor.execute(_session(), _deposit())

        assert result.error_kind == "relay_unavailable"
        assert "open" in result.error
        relay.send_calls.assert_not_called()

    @pytest.mark.asyncio
    async def test_generic_relay_error(self, relay, signer):
        relay.send_calls.side_effect = RelayError("Relay returned no bundle id")
        result = await _executor(relay, signer).execute(_session(), _deposit())
        assert result.error_kind == "relay_error"
