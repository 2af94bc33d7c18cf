"""
Scrape and health endpoints, mounted at the root outside /api/v1.
"""

import asyncio
import logging

from fastapi import APIRouter, Response

from ...core.circuit_breaker import get_circuit_breaker_health
from ...core.config import get_settings
from ...db import database
from ...monitoring.metrics import get_metrics_collector
from ...services import chain_client
from ...services.redis_service import get_redis_service

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
async def get_metrics():
    collector = get_metrics_collector()
    return Response(content=collector.generate_metrics(), media_type=collector.content_type)


@router.get("/health")
async def health_check():
    """Liveness only; dependencies are reported by /health/detailed."""
    settings = get_settings()
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


async def _redis_reachable() -> bool:
    try:
        redis = await get_redis_service()
        return await redis.ping()
    except Exception as e:
        logger.warning(f"Health check: Redis unreachable - {e}")
        return False


@router.get("/health/detailed")
async def detailed_health_check():
    """
    Check Redis, the database and the RPC node concurrently.

    The service is "degraded" when Redis or the database is down or any
    breaker is open. An RPC outage is reported but does not degrade the
    API, since the oracle gate already blocks automation in that case.
    """
    settings = get_settings()
    redis_ok, db_ok, rpc_ok = await asyncio.gather(
        _redis_reachable(), database.ping_database(), chain_client.ping()
    )
    breakers = get_circuit_breaker_health()

    collector = get_metrics_collector()
    collector.set_redis_status(redis_ok)
    collector.set_database_status(db_ok)

    def component(ok: bool) -> dict:
        return {"status": "ok" if ok else "error"}

    healthy = redis_ok and db_ok and breakers["healthy"]
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "components": {
            "redis": component(redis_ok),
            "database": component(db_ok),
            "rpc": component(rpc_ok),
            "circuit_breakers": breakers,
        },
    }


@router.get("/health/circuit-breakers")
async def circuit_breaker_health():
    """State of the relay, oracle and per-protocol opportunity breakers."""
    return get_circuit_breaker_health()
