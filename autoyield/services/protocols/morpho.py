"""
Morpho (MetaMorpho ERC-4626 vaults) adapter.

Vault discovery and APYs come from the Morpho GraphQL API; positions are
read on-chain from each known vault.
"""

import logging
import time
from typing import Optional

import httpx
from web3 import AsyncWeb3

from ...core.config import get_settings
from ...models.opportunity import Position, Protocol, YieldOpportunity
from ..chain_client import ERC4626_ABI, checksum, get_web3
from ..execution_builder import Call, build_deposit_calls, build_withdraw_calls
from .base import ProtocolAdapter

logger = logging.getLogger(__name__)

VAULTS_QUERY = """
query GetUsdcVaults($chainId: Int!) {
  vaults(where: { chainId_in: [$chainId], whitelisted: true }, first: 100) {
    items {
      address
      name
      symbol
      asset { address }
      state { totalAssets totalAssetsUsd netApy }
      metadata { curators { name } }
    }
  }
}
"""

LOW_TVL_USD = 1_000_000


def morpho_risk_score(total_assets_usd: float, curator: Optional[str]) -> float:
    """Base 0.1, +0.1 uncurated, +0.1 under $1M TVL"""
    score = 0.1
    if not curator:
        score += 0.1
    if total_assets_usd < LOW_TVL_USD:
        score += 0.1
    return min(score, 1.0)


class MorphoAdapter(ProtocolAdapter):
    protocol = Protocol.MORPHO
    erc4626 = True

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        settings = get_settings()
        self.api_url = settings.morpho_api_url
        self.chain_id = settings.chain_id
        self.asset = settings.stable_asset_address
        self.static_vaults = settings.get_morpho_vaults()
        self._enabled = settings.morpho_enabled
        self._http = http_client
        self._w3 = w3
        self._known: dict[str, YieldOpportunity] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _post(self, payload: dict) -> dict:
        if self._http is not None:
            response = await self._http.post(self.api_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.api_url, json=payload)
        response.raise_for_status()
        return response.json()

    async def fetch_opportunities(self) -> list[YieldOpportunity]:
        body = await self._post(
            {"query": VAULTS_QUERY, "variables": {"chainId": self.chain_id}}
        )
        if body.get("errors"):
            raise ValueError(f"Morpho API error: {body['errors'][0].get('message')}")

        items = ((body.get("data") or {}).get("vaults") or {}).get("items") or []
        opportunities = []
        for item in items:
            asset = ((item.get("asset") or {}).get("address") or "").lower()
            if asset != self.asset.lower():
                continue

            state = item.get("state") or {}
            curators = (item.get("metadata") or {}).get("curators") or []
            curator = curators[0]["name"] if curators else None
            tvl_usd = float(state.get("totalAssetsUsd") or 0)
            total_assets = int(state.get("totalAssets") or 0)

            opp = YieldOpportunity(
                id=f"morpho-{item['address'].lower()}",
                protocol=Protocol.MORPHO,
                name=item.get("name") or item["address"],
                asset=self.asset,
                address=item["address"],
                apy=float(state.get("netApy") or 0),
                tvl=total_assets,
                risk_score=morpho_risk_score(tvl_usd, curator),
                liquidity_depth=total_assets,
                metadata={
                    "symbol": item.get("symbol"),
                    "curator": curator,
                    "total_assets_usd": tvl_usd,
                    "is_vault": True,
                },
            )
            opportunities.append(opp)

        self._known = {o.address.lower(): o for o in opportunities}
        logger.debug(f"Morpho: {len(opportunities)} stable-asset vaults")
        return opportunities

    def _vaults_to_scan(self) -> list[str]:
        vaults = {v.lower() for v in self.static_vaults}
        vaults.update(self._known.keys())
        return sorted(vaults)

    async def fetch_positions(self, owner: str) -> list[Position]:
        if not self._known and not self.static_vaults:
            await self.fetch_opportunities()

        w3 = self._w3 or get_web3()
        now = int(time.time())
        positions = []
        for vault in self._vaults_to_scan():
            contract = w3.eth.contract(address=checksum(vault), abi=ERC4626_ABI)
            shares = await contract.functions.balanceOf(checksum(owner)).call()
            if shares == 0:
                continue
            assets = await contract.functions.convertToAssets(shares).call()
            known = self._known.get(vault)
            positions.append(
                Position(
                    protocol=Protocol.MORPHO,
                    vault_address=vault,
                    shares=shares,
                    assets=assets,
                    apy=known.apy if known else 0.0,
                    # Entry time is not recorded on-chain
                    entered_at=now,
                )
            )
        return positions

    def build_deposit(self, market: str, amount: int, receiver: str) -> list[Call]:
        return build_deposit_calls(market, self.asset, amount, receiver)

    def build_withdraw(self, position: Position, receiver: str) -> list[Call]:
        return build_withdraw_calls(position.vault_address, position.shares, receiver, receiver)
