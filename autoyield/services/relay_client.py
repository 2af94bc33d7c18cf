"""
Sponsored relay client.

Speaks EIP-5792 style JSON-RPC (``wallet_sendCalls`` and
``wallet_getCallsStatus``) to a bundler/paymaster endpoint. The batch is
atomic; gas is paid by the relay's sponsor.

Extra capabilities sent with a batch:
- ``permissions``: session key address, call policy and the session
  key's signature over the canonical request
- ``eip7702Authorization``: the owner's signed delegation, attached only
  when the account is not yet delegated

Failures are raised as RelayError subclasses; the executor turns them
into structured results.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import keccak

from ..core.config import get_settings
from ..core.errors import (
    DeploymentRequired,
    OperationReverted,
    RelayError,
    RelayUnavailable,
    SponsorBudgetExhausted,
)
from ..models.session import CallPolicy
from .execution_builder import Call

logger = logging.getLogger(__name__)

STATUS_PENDING = 100
STATUS_CONFIRMED = 200
STATUS_OFFCHAIN_FAILURE = 400
STATUS_REVERTED = 500
STATUS_PARTIAL_REVERT = 600


@dataclass(frozen=True)
class CallsStatus:
    id: str
    status: int
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None

    @property
    def pending(self) -> bool:
        return self.status < STATUS_CONFIRMED


def classify_relay_error(message: str) -> RelayError:
    """Map a relay error message onto the relay error taxonomy"""
    text = message.lower()
    # A revert can surface inside paymaster validation; it is still a revert
    if "revert" in text:
        return OperationReverted(message)
    if any(p in text for p in ("sponsor", "budget", "paymaster", "policy limit")):
        return SponsorBudgetExhausted(message)
    if any(p in text for p in ("not deployed", "deployment", "no delegation", "authorization required")):
        return DeploymentRequired(message)
    return RelayError(message)


def sign_request(signer: LocalAccount, payload: dict) -> str:
    """Session key signature (EIP-191) over the keccak of the canonical JSON payload"""
    digest = keccak(text=json.dumps(payload, sort_keys=True, separators=(",", ":")))
    signed = signer.sign_message(encode_defunct(primitive=digest))
    return "0x" + bytes(signed.signature).hex()


def policy_to_capability(policy: CallPolicy) -> list[dict]:
    return [
        {
            "target": p.target,
            "selector": p.selector,
            "allowedSpenders": list(p.allowed_spenders) if p.allowed_spenders else None,
        }
        for p in policy.permissions
    ]


class RelayClient:
    """
    Usage:
        relay = RelayClient()
        bundle_id = await relay.send_calls(account, calls, signer, policy)
        status = await relay.wait_for_receipt(bundle_id)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        poll_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.url = url if url is not None else settings.relay_url
        self.api_key = api_key if api_key is not None else settings.relay_api_key
        self.chain_id = settings.chain_id
        self.entry_point = settings.entry_point_address
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.relay_poll_interval_seconds
        )
        self.timeout = settings.rpc_timeout_seconds
        self._http = http_client

    async def _post(self, body: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        if self._http is not None:
            return await self._http.post(self.url, json=body, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=body, headers=headers)

    async def _rpc(self, method: str, params: list) -> Any:
        if not self.url:
            raise RelayUnavailable("Relay URL not configured")

        body = {"jsonrpc": "2.0", "id": uuid.uuid4().hex, "method": method, "params": params}
        try:
            response = await self._post(body)
        except httpx.TransportError as e:
            raise RelayUnavailable(f"Relay unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise RelayUnavailable(f"Relay returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise classify_relay_error(f"Relay returned HTTP {response.status_code}: {response.text}")

        payload = response.json()
        if payload.get("error"):
            raise classify_relay_error(str(payload["error"].get("message", payload["error"])))
        return payload.get("result")

    def _request(self, account: str, calls: list[Call]) -> dict:
        return {
            "version": "2.0.0",
            "chainId": hex(self.chain_id),
            "from": account,
            "atomicRequired": True,
            "calls": [c.to_dict() for c in calls],
        }

    async def send_calls(
        self,
        account: str,
        calls: list[Call],
        signer: LocalAccount,
        policy: CallPolicy,
        authorization: Optional[dict] = None,
    ) -> str:
        """Submit one atomic batch. Returns the relay's bundle id."""
        request = self._request(account, calls)
        capabilities: dict[str, Any] = {
            "paymasterService": {"entryPoint": self.entry_point},
            "permissions": {
                "signer": signer.address,
                "sudo": policy.sudo,
                "policy": policy_to_capability(policy),
                "signature": sign_request(signer, request),
            },
        }
        if authorization is not None:
            capabilities["eip7702Authorization"] = authorization
        request["capabilities"] = capabilities

        result = await self._rpc("wallet_sendCalls", [request])
        bundle_id = result.get("id") if isinstance(result, dict) else result
        if not bundle_id:
            raise RelayError("Relay returned no bundle id")
        logger.info(f"Relay accepted batch {bundle_id} for {account} ({len(calls)} calls)")
        return bundle_id

    async def send_authorization(self, account: str, authorization: dict) -> str:
        """Submit an owner-signed delegation with an empty batch"""
        request = self._request(account, [])
        request["capabilities"] = {
            "paymasterService": {"entryPoint": self.entry_point},
            "eip7702Authorization": authorization,
        }
        result = await self._rpc("wallet_sendCalls", [request])
        bundle_id = result.get("id") if isinstance(result, dict) else result
        if not bundle_id:
            raise RelayError("Relay returned no bundle id")
        return bundle_id

    async def get_calls_status(self, bundle_id: str) -> CallsStatus:
        result = await self._rpc("wallet_getCallsStatus", [bundle_id]) or {}
        receipts = result.get("receipts") or []
        last = receipts[-1] if receipts else {}
        gas_used = last.get("gasUsed")
        return CallsStatus(
            id=bundle_id,
            status=int(result.get("status", STATUS_PENDING)),
            tx_hash=last.get("transactionHash"),
            gas_used=int(gas_used, 16) if isinstance(gas_used, str) else gas_used,
        )

    async def wait_for_receipt(self, bundle_id: str) -> CallsStatus:
        """
        Poll until the batch is terminal. Unbounded; wrap in a timeout.

        Raises:
            OperationReverted: Batch mined but reverted
            RelayError: Relay dropped the batch before inclusion
        """
        while True:
            status = await self.get_calls_status(bundle_id)
            if not status.pending:
                break
            await asyncio.sleep(self.poll_interval)

        if status.status in (STATUS_REVERTED, STATUS_PARTIAL_REVERT):
            raise OperationReverted(
                f"Batch {bundle_id} reverted on-chain (tx {status.tx_hash or 'unknown'})"
            )
        if status.status >= STATUS_OFFCHAIN_FAILURE:
            raise RelayError(f"Batch {bundle_id} failed before inclusion (status {status.status})")
        return status

    async def ping(self) -> bool:
        """Reachability only; any JSON-RPC response counts"""
        if not self.url:
            return False
        try:
            await self._post({"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []})
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Relay ping failed: {e}")
            return False


_relay_client: Optional[RelayClient] = None


def get_relay_client() -> RelayClient:
    """Get or create singleton RelayClient instance"""
    global _relay_client
    if _relay_client is None:
        _relay_client = RelayClient()
    return _relay_client
