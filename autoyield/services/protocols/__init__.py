"""Lending protocol adapters and their registry"""

from typing import Optional

from ...models.opportunity import Position, Protocol, YieldOpportunity
from ..execution_builder import Call, build_rebalance_calls
from .aave import AaveAdapter
from .base import ProtocolAdapter
from .moonwell import MoonwellAdapter
from .morpho import MorphoAdapter


def default_adapters() -> list[ProtocolAdapter]:
    """All adapters in registry order (Morpho, Aave, Moonwell)"""
    return [MorphoAdapter(), AaveAdapter(), MoonwellAdapter()]


class AdapterRegistry:
    """Lookup of adapters by protocol, and call building across them"""

    def __init__(self, adapters: Optional[list[ProtocolAdapter]] = None):
        self._adapters = {a.protocol: a for a in (adapters if adapters is not None else default_adapters())}

    def get(self, protocol: Protocol) -> ProtocolAdapter:
        try:
            return self._adapters[protocol]
        except KeyError:
            raise ValueError(f"No adapter registered for {protocol.value}") from None

    def enabled(self) -> list[ProtocolAdapter]:
        return [a for a in self._adapters.values() if a.enabled]

    def non_vault_markets(self, addresses: list[str]) -> list[str]:
        """The subset of ``addresses`` that belong to a non-ERC-4626 adapter."""
        known = set()
        for adapter in self._adapters.values():
            if not adapter.erc4626:
                known |= adapter.market_addresses()
        return [a for a in addresses if a.lower() in known]

    def build_entry(self, target: YieldOpportunity, amount: int, receiver: str) -> list[Call]:
        return self.get(target.protocol).build_deposit(target.address, amount, receiver)

    def build_move(
        self,
        source: Position,
        target: YieldOpportunity,
        receiver: str,
        deposit_amount: int,
    ) -> list[Call]:
        """
        Exit ``source`` and enter ``target`` in one ordered call list.

        Between two ERC-4626 vaults this is the three-step
        redeem/approve/deposit form with the MAX deposit sentinel.
        Otherwise the exit adapter's withdraw calls come first, followed
        by the entry adapter's deposit of ``deposit_amount``.
        """
        exit_adapter = self.get(source.protocol)
        entry_adapter = self.get(target.protocol)

        if exit_adapter.erc4626 and entry_adapter.erc4626:
            return build_rebalance_calls(
                source.vault_address, target.address, entry_adapter.asset, source.shares, receiver
            )
        if deposit_amount <= 0:
            raise ValueError("Deposit amount must be positive")
        return exit_adapter.build_withdraw(source, receiver) + entry_adapter.build_deposit(
            target.address, deposit_amount, receiver
        )


__all__ = [
    "AaveAdapter",
    "AdapterRegistry",
    "MoonwellAdapter",
    "MorphoAdapter",
    "ProtocolAdapter",
    "default_adapters",
]
