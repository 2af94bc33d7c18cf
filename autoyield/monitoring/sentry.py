"""
Sentry error reporting for the API and the rebalance scheduler.

Disabled unless SENTRY_DSN is set; the helpers below are then no-ops.
Events never carry auth headers or session key material.
"""

import asyncio
import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from ..core.config import get_settings

logger = logging.getLogger(__name__)

FILTERED = "[Filtered]"
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})
_SENSITIVE_FIELDS = frozenset({"private_key", "encrypted_private_key", "signature", "r", "s"})

# Disconnects and cancelled pipelines are not faults
_IGNORED_EXCEPTIONS = (ConnectionResetError, BrokenPipeError, asyncio.CancelledError)
_CLIENT_ERROR_STATUSES = frozenset({400, 401, 403, 404, 429})

_initialized = False


def init_sentry() -> bool:
    """Configure the SDK; returns False when no DSN is set or init fails."""
    global _initialized
    settings = get_settings()

    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, skipping initialization")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            release=f"autoyield@{settings.app_version}",
            traces_sample_rate=settings.sentry_traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                AsyncioIntegration(),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            send_default_pii=False,
            before_send=_before_send,
            max_breadcrumbs=50,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    sentry_sdk.set_tag("app", settings.app_name)
    sentry_sdk.set_tag("chain_id", settings.chain_id)
    _initialized = True
    logger.info(
        f"Sentry initialized: environment={settings.environment}, "
        f"traces_sample_rate={settings.sentry_traces_sample_rate}"
    )
    return True


def _scrub(mapping: Any, keys: frozenset[str]) -> None:
    if isinstance(mapping, dict):
        for key in keys & mapping.keys():
            mapping[key] = FILTERED


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    exc_info = hint.get("exc_info")
    if exc_info:
        exc_value = exc_info[1]
        if isinstance(exc_value, _IGNORED_EXCEPTIONS):
            return None
        # AppError and HTTPException both expose status_code
        if getattr(exc_value, "status_code", None) in _CLIENT_ERROR_STATUSES:
            return None

    request = event.get("request")
    if isinstance(request, dict):
        _scrub(request.get("headers"), _SENSITIVE_HEADERS)
        _scrub(request.get("data"), _SENSITIVE_FIELDS)

    return event


def capture_exception(
    error: Exception,
    tags: Optional[dict] = None,
    extra: Optional[dict] = None,
) -> Optional[str]:
    """
    Report ``error`` with scoped tags (e.g. ``component``, ``stage``,
    ``wallet``). Returns the event id, or None when Sentry is off.
    """
    if not _initialized:
        logger.debug(f"Exception not sent (Sentry disabled): {error}")
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)


def add_breadcrumb(
    message: str,
    category: str = "info",
    level: str = "info",
    data: Optional[dict] = None,
) -> None:
    if _initialized:
        sentry_sdk.add_breadcrumb(message=message, category=category, level=level, data=data)
