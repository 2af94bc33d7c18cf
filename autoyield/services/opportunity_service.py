"""
Opportunity aggregation across protocol adapters.

A failing adapter contributes nothing; the others still report. Each
adapter sits behind its own circuit breaker so a dead API is skipped
quickly on the next batch.
"""

import asyncio
import logging
from typing import Optional

from ..core.circuit_breaker import get_opportunity_source_circuit_breaker
from ..models.opportunity import Position, YieldOpportunity
from .protocols import AdapterRegistry, ProtocolAdapter
from .redis_service import RedisService, get_redis_service

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 60


class OpportunityService:
    """
    Usage:
        service = OpportunityService()
        opportunities = await service.list_opportunities()
    """

    def __init__(
        self,
        registry: Optional[AdapterRegistry] = None,
        redis_service: Optional[RedisService] = None,
        cache_ttl: int = CACHE_TTL_SECONDS,
    ):
        self.registry = registry or AdapterRegistry()
        self.redis_service = redis_service
        self.cache_ttl = cache_ttl

    async def _fetch_from(self, adapter: ProtocolAdapter) -> list[YieldOpportunity]:
        breaker = get_opportunity_source_circuit_breaker(adapter.protocol.value)
        try:
            return await breaker.call(adapter.fetch_opportunities)
        except Exception as e:
            logger.warning(f"{adapter.protocol.value} opportunities unavailable: {e}")
            return []

    async def list_opportunities(self, use_cache: bool = True) -> list[YieldOpportunity]:
        """All enabled adapters' opportunities, highest APY first"""
        if use_cache and self.redis_service is not None:
            try:
                cached = await self.redis_service.cache_get(
                    RedisService.OPPORTUNITIES_CACHE_KEY
                )
                if cached is not None:
                    return [YieldOpportunity.model_validate(o) for o in cached]
            except Exception as e:
                logger.warning(f"Opportunity cache read failed: {e}")

        adapters = self.registry.enabled()
        results = await asyncio.gather(*(self._fetch_from(a) for a in adapters))
        opportunities = [opp for batch in results for opp in batch]
        # Stable sort keeps adapter order among equal APYs
        opportunities.sort(key=lambda o: o.apy, reverse=True)

        if self.redis_service is not None and opportunities:
            try:
                await self.redis_service.cache_set(
                    RedisService.OPPORTUNITIES_CACHE_KEY,
                    [o.model_dump(mode="json") for o in opportunities],
                    ttl=self.cache_ttl,
                )
            except Exception as e:
                logger.warning(f"Opportunity cache write failed: {e}")

        return opportunities

    async def _positions_from(self, adapter: ProtocolAdapter, owner: str) -> list[Position]:
        try:
            return await adapter.fetch_positions(owner)
        except Exception as e:
            logger.warning(f"{adapter.protocol.value} positions unavailable for {owner}: {e}")
            return []

    async def list_positions(self, owner: str) -> list[Position]:
        """Positions across enabled adapters; a failing adapter contributes none"""
        adapters = self.registry.enabled()
        results = await asyncio.gather(*(self._positions_from(a, owner) for a in adapters))
        return [p for batch in results for p in batch]


def filter_to_vaults(
    opportunities: list[YieldOpportunity], vaults: list[str]
) -> list[YieldOpportunity]:
    """Keep opportunities whose address is in ``vaults`` (case-insensitive)"""
    allowed = {v.lower() for v in vaults}
    return [o for o in opportunities if o.address.lower() in allowed]


_opportunity_service: Optional[OpportunityService] = None


async def get_opportunity_service() -> OpportunityService:
    """Get or create the shared service; caching is skipped when Redis is down"""
    global _opportunity_service
    if _opportunity_service is None:
        try:
            redis_service = await get_redis_service()
        except Exception as e:
            logger.warning(f"Opportunity cache disabled, Redis unavailable: {e}")
            redis_service = None
        _opportunity_service = OpportunityService(redis_service=redis_service)
    return _opportunity_service
