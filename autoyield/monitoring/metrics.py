"""
Prometheus instruments for the API, the scheduler and the relay path.

All names are prefixed with the app name (``autoyield_``). Label values
are kept to small fixed sets: route templates, outcome names and oracle
reasons, never wallet addresses.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


class MetricsCollector:
    """Owns every instrument; one per process via get_metrics_collector()."""

    def __init__(self, app_name: str = "autoyield"):
        self.app_name = app_name

        # ==================== HTTP Metrics ====================

        self.http_requests_total = Counter(
            f"{app_name}_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
        )

        self.http_request_duration_seconds = Histogram(
            f"{app_name}_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ==================== Scheduler Metrics ====================

        self.cron_runs_total = Counter(
            f"{app_name}_cron_runs_total",
            "Total scheduler batch invocations",
            ["status"],  # status: completed/rejected/error
        )

        self.cron_duration_seconds = Histogram(
            f"{app_name}_cron_duration_seconds",
            "Scheduler batch duration",
            buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
        )

        self.user_outcomes_total = Counter(
            f"{app_name}_user_outcomes_total",
            "Per-user pipeline outcomes",
            ["outcome"],  # outcome: rebalanced/skipped/no_action/simulated/error
        )

        # ==================== Execution Metrics ====================

        self.executions_total = Counter(
            f"{app_name}_executions_total",
            "Batched operations submitted through the relay",
            ["action_type", "status"],
        )

        self.execution_latency_seconds = Histogram(
            f"{app_name}_execution_latency_seconds",
            "Submission to terminal receipt latency",
            ["action_type"],
            buckets=(0.1, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        # ==================== Safety Metrics ====================

        self.oracle_verdicts_total = Counter(
            f"{app_name}_oracle_verdicts_total",
            "Oracle safety gate verdicts",
            ["safe", "reason"],
        )

        self.rate_limit_denials_total = Counter(
            f"{app_name}_rate_limit_denials_total",
            "Transfers rejected by the rate limiter",
            ["reason"],  # reason: amount_cap/daily_cap
        )

        # ==================== System Metrics ====================

        self.redis_connected = Gauge(
            f"{app_name}_redis_connected",
            "1 while the last Redis health check succeeded",
        )

        self.database_connected = Gauge(
            f"{app_name}_database_connected",
            "1 while the last database health check succeeded",
        )

        self.app_info = Info(
            f"{app_name}_app_info",
            "Build version and environment",
        )

    def set_app_info(self, version: str, environment: str) -> None:
        self.app_info.info({"version": version, "environment": environment})

    # ==================== HTTP Tracking ====================

    def track_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float,
    ) -> None:
        self.http_requests_total.labels(method=method, endpoint=endpoint, status=str(status)).inc()
        self.http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

    # ==================== Scheduler Tracking ====================

    def track_cron_run(self, status: str, duration: Optional[float] = None) -> None:
        self.cron_runs_total.labels(status=status).inc()
        if duration is not None:
            self.cron_duration_seconds.observe(duration)

    def track_user_outcome(self, outcome: str) -> None:
        self.user_outcomes_total.labels(outcome=outcome).inc()

    # ==================== Execution Tracking ====================

    def track_execution(
        self,
        action_type: str,
        success: bool,
        latency_seconds: float,
        simulated: bool = False,
    ) -> None:
        """Track one relay submission"""
        if simulated:
            status = "simulated"
        else:
            status = "success" if success else "failed"
        self.executions_total.labels(action_type=action_type, status=status).inc()
        if not simulated:
            self.execution_latency_seconds.labels(action_type=action_type).observe(
                latency_seconds
            )

    # ==================== Safety Tracking ====================

    def track_oracle_verdict(self, safe: bool, reason: Optional[str]) -> None:
        # Free-form error messages collapse to "error"
        label = reason if reason in _ORACLE_REASONS else ("ok" if safe else "error")
        self.oracle_verdicts_total.labels(safe=str(safe).lower(), reason=label).inc()

    def track_rate_limit_denial(self, reason: str) -> None:
        self.rate_limit_denials_total.labels(reason=reason).inc()

    # ==================== System Tracking ====================

    def set_redis_status(self, connected: bool) -> None:
        self.redis_connected.set(1 if connected else 0)

    def set_database_status(self, connected: bool) -> None:
        self.database_connected.set(1 if connected else 0)

    def generate_metrics(self) -> bytes:
        return generate_latest()

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


_ORACLE_REASONS = {
    "sequencer down",
    "recently restarted, within grace period",
    "stale",
    "depegged",
}

_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
