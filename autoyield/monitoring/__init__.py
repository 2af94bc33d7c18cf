"""Monitoring and metrics module"""

from .metrics import MetricsCollector, get_metrics_collector
from .middleware import PrometheusMiddleware, setup_prometheus_middleware
from .sentry import add_breadcrumb, capture_exception, init_sentry

__all__ = [
    # Prometheus metrics
    "MetricsCollector",
    "get_metrics_collector",
    "PrometheusMiddleware",
    "setup_prometheus_middleware",
    # Sentry APM
    "init_sentry",
    "capture_exception",
    "add_breadcrumb",
]
