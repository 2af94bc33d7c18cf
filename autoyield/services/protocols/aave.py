"""Aave v3 pool adapter. Disabled unless pool and aToken are configured."""

import logging
import time
from typing import Optional

from web3 import AsyncWeb3

from ...core.config import get_settings
from ...models.opportunity import Position, Protocol, YieldOpportunity
from ..chain_client import ERC20_ABI, checksum, get_web3
from ..execution_builder import Call, approve_call, encode_call
from .base import ProtocolAdapter

logger = logging.getLogger(__name__)

RAY = 10**27
AAVE_RISK_SCORE = 0.05

POOL_ABI = [
    {
        "name": "getReserveData",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "asset", "type": "address"}],
        "outputs": [
            {"name": "configuration", "type": "uint256"},
            {"name": "liquidityIndex", "type": "uint128"},
            {"name": "currentLiquidityRate", "type": "uint128"},
            {"name": "variableBorrowIndex", "type": "uint128"},
            {"name": "currentVariableBorrowRate", "type": "uint128"},
            {"name": "currentStableBorrowRate", "type": "uint128"},
            {"name": "lastUpdateTimestamp", "type": "uint40"},
            {"name": "id", "type": "uint16"},
            {"name": "aTokenAddress", "type": "address"},
            {"name": "stableDebtTokenAddress", "type": "address"},
            {"name": "variableDebtTokenAddress", "type": "address"},
            {"name": "interestRateStrategyAddress", "type": "address"},
            {"name": "accruedToTreasury", "type": "uint128"},
            {"name": "unbacked", "type": "uint128"},
            {"name": "isolationModeTotalDebt", "type": "uint128"},
        ],
    },
]


class AaveAdapter(ProtocolAdapter):
    protocol = Protocol.AAVE

    def __init__(self, w3: Optional[AsyncWeb3] = None):
        settings = get_settings()
        self.pool = settings.aave_pool_address
        self.atoken = settings.aave_atoken_address
        self.asset = settings.stable_asset_address
        self._w3 = w3

    @property
    def enabled(self) -> bool:
        return bool(self.pool and self.atoken)

    def market_addresses(self) -> set[str]:
        return {a.lower() for a in (self.pool, self.atoken) if a}

    async def fetch_opportunities(self) -> list[YieldOpportunity]:
        if not self.enabled:
            return []
        w3 = self._w3 or get_web3()
        pool = w3.eth.contract(address=checksum(self.pool), abi=POOL_ABI)
        reserve = await pool.functions.getReserveData(checksum(self.asset)).call()
        apy = reserve[2] / RAY
        liquidity = await w3.eth.contract(
            address=checksum(self.asset), abi=ERC20_ABI
        ).functions.balanceOf(checksum(self.atoken)).call()

        return [
            YieldOpportunity(
                id=f"aave-{self.asset.lower()}",
                protocol=Protocol.AAVE,
                name="Aave v3 USDC",
                asset=self.asset,
                address=self.pool,
                apy=apy,
                tvl=liquidity,
                risk_score=AAVE_RISK_SCORE,
                liquidity_depth=liquidity,
                metadata={"a_token": self.atoken},
            )
        ]

    async def fetch_positions(self, owner: str) -> list[Position]:
        if not self.enabled:
            return []
        w3 = self._w3 or get_web3()
        atoken = w3.eth.contract(address=checksum(self.atoken), abi=ERC20_ABI)
        balance = await atoken.functions.balanceOf(checksum(owner)).call()
        if balance == 0:
            return []
        # aTokens are 1:1 with the underlying
        return [
            Position(
                protocol=Protocol.AAVE,
                vault_address=self.pool.lower(),
                shares=balance,
                assets=balance,
                entered_at=int(time.time()),
            )
        ]

    def build_deposit(self, market: str, amount: int, receiver: str) -> list[Call]:
        return [
            approve_call(self.asset, self.pool, amount),
            Call(
                target=checksum(self.pool),
                data=encode_call(
                    "supply(address,uint256,address,uint16)",
                    ["address", "uint256", "address", "uint16"],
                    [self.asset, amount, receiver, 0],
                ),
            ),
        ]

    def build_withdraw(self, position: Position, receiver: str) -> list[Call]:
        return [
            Call(
                target=checksum(self.pool),
                data=encode_call(
                    "withdraw(address,uint256,address)",
                    ["address", "uint256", "address"],
                    [self.asset, position.assets, receiver],
                ),
            )
        ]
