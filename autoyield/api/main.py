"""
AUTOYIELD API.

Serves the user endpoints (agent registration, transfers, optimize), the
scheduler trigger and the health/metrics surface. Run with
``uvicorn autoyield.api.main:app`` or ``python run.py``.
"""

import json
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from ..core.config import Settings, get_settings, is_simulation_mode
from ..db.database import close_db, init_db
from ..monitoring.metrics import get_metrics_collector
from ..monitoring.middleware import setup_prometheus_middleware
from ..monitoring.sentry import init_sentry
from ..services.redis_service import close_redis, get_redis_service
from .routes import agent, metrics, optimize, transfers

API_PREFIX = "/api/v1"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message[, exception]."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(settings: Settings) -> None:
    if settings.environment == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))
        logging.root.handlers = [handler]
        logging.root.setLevel(logging.INFO)
        return

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


configure_logging(get_settings())
logger = logging.getLogger(__name__)


def _log_runtime_mode(settings: Settings) -> None:
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")
    logger.info(f"Chain {settings.chain_id} via {settings.rpc_url}, cost model {settings.cost_model}")
    if is_simulation_mode():
        logger.warning("AGENT_SIMULATION_MODE is on: executions return synthetic hashes")
    if not settings.relay_url:
        logger.warning("RELAY_URL not set: live executions will fail as relay_unavailable")


async def _connect_redis() -> None:
    try:
        redis = await get_redis_service()
        if await redis.ping():
            logger.info("Redis: Connected")
        else:
            logger.warning("Redis: ping returned false")
    except Exception as e:
        # Locks fail closed, so the cron skips users until Redis is back
        logger.error(f"Redis: Connection failed - {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    _log_runtime_mode(settings)

    logger.info("Sentry: enabled" if init_sentry() else "Sentry: disabled (no DSN configured)")

    if settings.is_debug:
        try:
            await init_db()
            logger.info("Database: tables ensured")
        except Exception as e:
            logger.error(f"Database: Connection failed - {e}")

    await _connect_redis()
    get_metrics_collector().set_app_info(settings.app_version, settings.environment)

    yield

    logger.info(f"Shutting down {settings.app_name}")
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    settings = get_settings()
    docs = settings.is_debug

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Non-custodial stablecoin yield automation with scoped session keys",
        lifespan=lifespan,
        docs_url=f"{API_PREFIX}/docs" if docs else None,
        redoc_url=f"{API_PREFIX}/redoc" if docs else None,
        openapi_url=f"{API_PREFIX}/openapi.json" if docs else None,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        if not settings.is_debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    setup_prometheus_middleware(app)

    # Added last so it wraps everything else
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
    )

    for router in (agent.router, transfers.router, optimize.router):
        app.include_router(router, prefix=API_PREFIX)
    app.include_router(metrics.router)

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "api": API_PREFIX,
            "docs": f"{API_PREFIX}/docs" if docs else None,
        }

    return app


app = create_app()
