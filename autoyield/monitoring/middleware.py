"""
HTTP request metrics.

Paths are collapsed to route templates before they become label values so
wallet addresses and ids do not explode the series count.
"""

import re
import time
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .metrics import get_metrics_collector

DEFAULT_EXCLUDE_PATHS = frozenset({"/health", "/health/detailed", "/metrics"})

# Applied to each path segment, first match wins
_SEGMENT_RULES = (
    (re.compile(r"^[0-9a-f]{8}(-[0-9a-f]{4}){3}-[0-9a-f]{12}$", re.IGNORECASE), "{id}"),
    (re.compile(r"^0x[0-9a-fA-F]{40}$"), "{address}"),
    (re.compile(r"^\d+$"), "{id}"),
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts requests and observes latency by method, route template and status."""

    def __init__(self, app: ASGIApp, exclude_paths: Optional[frozenset[str]] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or DEFAULT_EXCLUDE_PATHS
        self.collector = get_metrics_collector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.exclude_paths:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            self.collector.track_request(
                method=request.method,
                endpoint=self._normalize_path(path),
                status=status_code,
                duration=time.perf_counter() - started,
            )

    def _normalize_path(self, path: str) -> str:
        return "/".join(self._template(segment) for segment in path.split("/"))

    @staticmethod
    def _template(segment: str) -> str:
        for pattern, placeholder in _SEGMENT_RULES:
            if pattern.match(segment):
                return placeholder
        return segment


def setup_prometheus_middleware(app, exclude_paths: Optional[frozenset[str]] = None) -> None:
    app.add_middleware(PrometheusMiddleware, exclude_paths=exclude_paths)
