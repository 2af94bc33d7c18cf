"""Moonwell (Compound-style mToken) adapter. Disabled unless configured."""

import logging
import time
from typing import Optional

from web3 import AsyncWeb3

from ...core.config import get_settings
from ...models.opportunity import Position, Protocol, YieldOpportunity
from ..chain_client import checksum, get_web3
from ..execution_builder import Call, approve_call, encode_call
from .base import ProtocolAdapter

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 31_536_000
MOONWELL_RISK_SCORE = 0.1

MTOKEN_ABI = [
    {
        "name": "supplyRatePerTimestamp",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getCash",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        # Non-view in the contract; evaluated through eth_call
        "name": "balanceOfUnderlying",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class MoonwellAdapter(ProtocolAdapter):
    protocol = Protocol.MOONWELL

    def __init__(self, w3: Optional[AsyncWeb3] = None):
        settings = get_settings()
        self.mtoken = settings.moonwell_mtoken_address
        self.asset = settings.stable_asset_address
        self._w3 = w3

    @property
    def enabled(self) -> bool:
        return bool(self.mtoken)

    def market_addresses(self) -> set[str]:
        return {self.mtoken.lower()} if self.mtoken else set()

    def _contract(self):
        w3 = self._w3 or get_web3()
        return w3.eth.contract(address=checksum(self.mtoken), abi=MTOKEN_ABI)

    async def fetch_opportunities(self) -> list[YieldOpportunity]:
        if not self.enabled:
            return []
        contract = self._contract()
        rate = await contract.functions.supplyRatePerTimestamp().call()
        cash = await contract.functions.getCash().call()
        return [
            YieldOpportunity(
                id=f"moonwell-{self.mtoken.lower()}",
                protocol=Protocol.MOONWELL,
                name="Moonwell USDC",
                asset=self.asset,
                address=self.mtoken,
                apy=rate * SECONDS_PER_YEAR / 1e18,
                tvl=cash,
                risk_score=MOONWELL_RISK_SCORE,
                liquidity_depth=cash,
            )
        ]

    async def fetch_positions(self, owner: str) -> list[Position]:
        if not self.enabled:
            return []
        underlying = await self._contract().functions.balanceOfUnderlying(
            checksum(owner)
        ).call()
        if underlying == 0:
            return []
        return [
            Position(
                protocol=Protocol.MOONWELL,
                vault_address=self.mtoken.lower(),
                shares=underlying,
                assets=underlying,
                entered_at=int(time.time()),
            )
        ]

    def build_deposit(self, market: str, amount: int, receiver: str) -> list[Call]:
        # mint credits msg.sender, so receiver is always the executing account
        return [
            approve_call(self.asset, self.mtoken, amount),
            Call(
                target=checksum(self.mtoken),
                data=encode_call("mint(uint256)", ["uint256"], [amount]),
            ),
        ]

    def build_withdraw(self, position: Position, receiver: str) -> list[Call]:
        return [
            Call(
                target=checksum(self.mtoken),
                data=encode_call("redeemUnderlying(uint256)", ["uint256"], [position.assets]),
            )
        ]
