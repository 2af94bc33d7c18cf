"""Protocol adapter interface"""

from abc import ABC, abstractmethod

from ...models.opportunity import Position, Protocol, YieldOpportunity
from ..execution_builder import Call


class ProtocolAdapter(ABC):
    """
    One lending protocol's view of the world.

    Adapters raise on network or parse failures; isolation into an empty
    result is the aggregating service's job.
    """

    protocol: Protocol
    asset: str

    # Markets are ERC-4626 vaults, so agent session keys can operate them
    erc4626: bool = False

    @property
    def enabled(self) -> bool:
        return True

    def market_addresses(self) -> set[str]:
        """Configured contract addresses, lowercase"""
        return set()

    @abstractmethod
    async def fetch_opportunities(self) -> list[YieldOpportunity]:
        """Current opportunities for the stable asset"""

    @abstractmethod
    async def fetch_positions(self, owner: str) -> list[Position]:
        """Non-zero positions held by ``owner``"""

    @abstractmethod
    def build_deposit(self, market: str, amount: int, receiver: str) -> list[Call]:
        """Calls that move ``amount`` of the stable asset into ``market``"""

    @abstractmethod
    def build_withdraw(self, position: Position, receiver: str) -> list[Call]:
        """Calls that fully exit ``position``"""
