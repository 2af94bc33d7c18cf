"""
Tests for the sponsored relay client.

Uses httpx.MockTransport so JSON-RPC bodies can be inspected without a
network.
"""

import json

import httpx
import pytest
from eth_account import Account

from autoyield.core.errors import (
    DeploymentRequired,
    OperationReverted,
    RelayError,
    RelayUnavailable,
    SponsorBudgetExhausted,
)
from autoyield.models.session import SessionType
from autoyield.services.execution_builder import build_deposit_calls
from autoyield.services.relay_client import (
    RelayClient,
    classify_relay_error,
    get_relay_client,
    sign_request,
)
from autoyield.services.session_service import build_call_policy

from conftest import USDC, VAULT_A

ACCOUNT = "0x" + "ab" * 20
RELAY_URL = "https://relay.test/rpc"
TX_HASH = "0x" + "34" * 32


def _client(handler, **kwargs) -> tuple[RelayClient, list[dict]]:
    seen: list[dict] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append({"body": json.loads(request.content), "headers": dict(request.headers)})
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return RelayClient(url=RELAY_URL, http_client=http, poll_interval=0, **kwargs), seen


def _result(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": "1", "result": result})


def _error(message: str) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": "1", "error": {"code": -32000, "message": message}})


@pytest.fixture
def signer():
    return Account.create()


@pytest.fixture
def policy():
    return build_call_policy(SessionType.AGENT, [VAULT_A], USDC)


class TestClassification:

    def test_sponsor(self):
        assert isinstance(classify_relay_error("paymaster rejected"), SponsorBudgetExhausted)
        assert isinstance(classify_relay_error("Sponsor budget exhausted"), SponsorBudgetExhausted)

    def test_revert(self):
        assert isinstance(classify_relay_error("execution reverted: ERC20"), OperationReverted)

    def test_revert_during_paymaster_validation(self):
        error = classify_relay_error("execution reverted in paymaster validation")
        assert isinstance(error, OperationReverted)
        assert not isinstance(error, SponsorBudgetExhausted)

    def test_deployment(self):
        assert isinstance(classify_relay_error("account not deployed"), DeploymentRequired)

    def test_other(self):
        error = classify_relay_error("something odd")
        assert type(error) is RelayError
        assert error.kind == "relay_error"


class TestSendCalls:

    @pytest.mark.asyncio
    async def test_request_shape(self, signer, policy):
        client, seen = _client(lambda r: _result({"id": "bundle-1"}), api_key="secret")
        calls = build_deposit_calls(VAULT_A, USDC, 100, ACCOUNT)

        bundle_id = await client.send_calls(ACCOUNT, calls, signer, policy)

        assert bundle_id == "bundle-1"
        body = seen[0]["body"]
        assert body["method"] == "wallet_sendCalls"
        request = body["params"][0]
        assert request["from"] == ACCOUNT
        assert request["atomicRequired"] is True
        assert request["chainId"] == hex(84532)
        assert [c["to"] for c in request["calls"]] == [calls[0].target, calls[1].target]
        assert all(c["value"] == "0x0" for c in request["calls"])
        permissions = request["capabilities"]["permissions"]
        assert permissions["signer"] == signer.address
        assert permissions["sudo"] is False
        assert len(permissions["policy"]) == 4
        assert "eip7702Authorization" not in request["capabilities"]
        assert seen[0]["headers"]["authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_signature_covers_request(self, signer, policy):
        client, seen = _client(lambda r: _result("bundle-2"))
        calls = build_deposit_calls(VAULT_A, USDC, 100, ACCOUNT)

        await client.send_calls(ACCOUNT, calls, signer, policy)

        request = seen[0]["body"]["params"][0]
        signature = request["capabilities"].pop("permissions")["signature"]
        request.pop("capabilities")
        assert signature == sign_request(signer, request)

    @pytest.mark.asyncio
    async def test_authorization_attached(self, signer, policy):
        client, seen = _client(lambda r: _result("bundle-3"))
        auth = {"address": VAULT_A, "nonce": "0x0"}

        await client.send_calls(ACCOUNT, build_deposit_calls(VAULT_A, USDC, 1, ACCOUNT), signer, policy, auth)

        assert seen[0]["body"]["params"][0]["capabilities"]["eip7702Authorization"] == auth

    @pytest.mark.asyncio
    async def test_rpc_error_classified(self, signer, policy):
        client, _ = _client(lambda r: _error("paymaster: sponsor budget exhausted"))

        with pytest.raises(SponsorBudgetExhausted):
            await client.send_calls(ACCOUNT, build_deposit_calls(VAULT_A, USDC, 1, ACCOUNT), signer, policy)

    @pytest.mark.asyncio
    async def test_http_5xx_unavailable(self, signer, policy):
        client, _ = _client(lambda r: httpx.Response(503, text="down"))

        with pytest.raises(RelayUnavailable):
            await client.send_calls(ACCOUNT, build_deposit_calls(VAULT_A, USDC, 1, ACCOUNT), signer, policy)

    @pytest.mark.asyncio
    async def test_transport_error_unavailable(self, signer, policy):
        def boom(request):
            raise httpx.ConnectError("refused")

        client, _ = _client(boom)

        with pytest.raises(RelayUnavailable, match="unreachable"):
            await client.send_calls(ACCOUNT, build_deposit_calls(VAULT_A, USDC, 1, ACCOUNT), signer, policy)

    @pytest.mark.asyncio
    async def test_missing_bundle_id(self, signer, policy):
        client, _ = _client(lambda r: _result(None))

        with pytest.raises(RelayError, match="no bundle id"):
            await client.send_calls(ACCOUNT, build_deposit_calls(VAULT_A, USDC, 1, ACCOUNT), signer, policy)

    @pytest.mark.asyncio
    async def test_unconfigured_url(self, signer, policy):
        client = RelayClient(url="")
        with pytest.raises(RelayUnavailable, match="not configured"):
            await client.send_calls(ACCOUNT, [], signer, policy)


class TestSendAuthorization:

    @pytest.mark.asyncio
    async def test_empty_batch_with_authorization(self):
        client, seen = _client(lambda r: _result({"id": "revoke-1"}))
        auth = {"address": "0x" + "00" * 20}

        assert await client.send_authorization(ACCOUNT, auth) == "revoke-1"

        request = seen[0]["body"]["params"][0]
        assert request["calls"] == []
        assert request["capabilities"]["eip7702Authorization"] == auth
        assert "permissions" not in request["capabilities"]


class TestReceipts:

    @pytest.mark.asyncio
    async def test_polls_until_confirmed(self):
        responses = iter([
            _result({"status": 100}),
            _result({"status": 200, "receipts": [{"transactionHash": TX_HASH, "gasUsed": "0x5208"}]}),
        ])
        client, seen = _client(lambda r: next(responses))

        status = await client.wait_for_receipt("bundle-1")

        assert status.tx_hash == TX_HASH
        assert status.gas_used == 21000
        assert len(seen) == 2
        assert seen[0]["body"]["method"] == "wallet_getCallsStatus"
        assert seen[0]["body"]["params"] == ["bundle-1"]

    @pytest.mark.asyncio
    async def test_reverted(self):
        client, _ = _client(lambda r: _result({"status": 500, "receipts": [{"transactionHash": TX_HASH}]}))

        with pytest.raises(OperationReverted, match=TX_HASH):
            await client.wait_for_receipt("bundle-1")

    @pytest.mark.asyncio
    async def test_dropped_before_inclusion(self):
        client, _ = _client(lambda r: _result({"status": 400}))

        with pytest.raises(RelayError, match="before inclusion"):
            await client.wait_for_receipt("bundle-1")


class TestPing:

    @pytest.mark.asyncio
    async def test_ping_ok(self):
        client, _ = _client(lambda r: _result("0x14a34"))
        assert await client.ping() is True

    @pytest.mark.asyncio
    async def test_ping_unconfigured(self):
        assert await RelayClient(url="").ping() is False

    @pytest.mark.asyncio
    async def test_ping_unreachable(self):
        def boom(request):
            raise httpx.ConnectError("refused")

        client, _ = _client(boom)
        assert await client.ping() is False


def test_get_relay_client_singleton():
    assert get_relay_client() is get_relay_client()
