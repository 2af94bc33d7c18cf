"""
Tests for monitoring.

Covers: MetricsCollector, PrometheusMiddleware path normalization,
Sentry initialization and _before_send filtering.
"""

from unittest.mock import MagicMock, patch

import pytest

from autoyield.core.errors import RateLimitExceeded


# ============================================================================
# MetricsCollector Tests
# ============================================================================

class TestMetricsCollector:
    """Tests for MetricsCollector with mocked prometheus_client."""

    @pytest.fixture(autouse=True)
    def mock_prometheus(self):
        """Mock prometheus_client to avoid global registry conflicts."""
        _new_mock = lambda *a, **kw: MagicMock()  # noqa: E731

        with (
            patch("autoyield.monitoring.metrics.Counter", side_effect=_new_mock),
            patch("autoyield.monitoring.metrics.Histogram", side_effect=_new_mock),
            patch("autoyield.monitoring.metrics.Gauge", side_effect=_new_mock),
            patch("autoyield.monitoring.metrics.Info", side_effect=_new_mock),
            patch(
                "autoyield.monitoring.metrics.generate_latest",
                return_value=b"# HELP test_metric\n",
            ),
            patch(
                "autoyield.monitoring.metrics.CONTENT_TYPE_LATEST",
                "text/plain; version=0.0.4; charset=utf-8",
            ),
        ):
            from autoyield.monitoring import metrics as _mod

            # Keep the process-wide collector; its instruments are registered once
            saved = _mod._collector
            _mod._collector = None
            yield
            _mod._collector = saved

    def test_collector_initialization(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")

        assert collector.app_name == "test_app"
        assert collector.cron_runs_total is not None
        assert collector.executions_total is not None
        assert collector.oracle_verdicts_total is not None

    def test_track_request(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        collector.track_request(method="POST", endpoint="/api/v1/transfers", status=200, duration=0.15)

        collector.http_requests_total.labels.assert_called_once_with(
            method="POST", endpoint="/api/v1/transfers", status="200"
        )

    def test_track_execution_success(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        collector.track_execution("rebalance", success=True, latency_seconds=4.2)

        collector.executions_total.labels.assert_called_once_with(action_type="rebalance", status="success")
        collector.execution_latency_seconds.labels.return_value.observe.assert_called_once_with(4.2)

    def test_track_execution_simulated_skips_latency(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        collector.track_execution("transfer", success=True, latency_seconds=0.0, simulated=True)

        collector.executions_total.labels.assert_called_once_with(action_type="transfer", status="simulated")
        collector.execution_latency_seconds.labels.assert_not_called()

    def test_track_cron_run(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        collector.track_cron_run("completed", duration=12.0)
        collector.track_cron_run("rejected")

        assert collector.cron_runs_total.labels.call_count == 2
        collector.cron_duration_seconds.observe.assert_called_once_with(12.0)

    def test_oracle_reason_labels_bounded(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        collector.track_oracle_verdict(False, "depegged")
        collector.track_oracle_verdict(False, "RPC timeout talking to 10.0.0.3")
        collector.track_oracle_verdict(True, None)

        labels = [c.kwargs for c in collector.oracle_verdicts_total.labels.call_args_list]
        assert labels == [
            {"safe": "false", "reason": "depegged"},
            {"safe": "false", "reason": "error"},
            {"safe": "true", "reason": "ok"},
        ]

    def test_generate_metrics_returns_bytes(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        assert isinstance(collector.generate_metrics(), bytes)
        assert "text/plain" in collector.content_type

    def test_get_metrics_collector_singleton(self):
        from autoyield.monitoring.metrics import get_metrics_collector

        assert get_metrics_collector() is get_metrics_collector()

    def test_system_status_tracking(self):
        from autoyield.monitoring.metrics import MetricsCollector

        collector = MetricsCollector(app_name="test_app")
        collector.set_redis_status(connected=True)
        collector.set_database_status(connected=False)

        collector.redis_connected.set.assert_called_once_with(1)
        collector.database_connected.set.assert_called_once_with(0)


# ============================================================================
# PrometheusMiddleware Tests
# ============================================================================

class TestPrometheusMiddleware:
    """Tests for PrometheusMiddleware path normalization."""

    def _make_middleware(self):
        """Create a bare middleware instance without calling __init__."""
        from autoyield.monitoring.middleware import PrometheusMiddleware

        mw = PrometheusMiddleware.__new__(PrometheusMiddleware)
        mw.exclude_paths = set()
        mw.collector = MagicMock()
        return mw

    def test_normalize_path_replaces_uuid(self):
        mw = self._make_middleware()
        result = mw._normalize_path("/api/v1/agent/actions/550e8400-e29b-41d4-a716-446655440000")
        assert result == "/api/v1/agent/actions/{id}"

    def test_normalize_path_replaces_address(self):
        mw = self._make_middleware()
        result = mw._normalize_path("/api/v1/positions/0x" + "aB" * 20)
        assert result == "/api/v1/positions/{address}"

    def test_normalize_path_replaces_numeric_id(self):
        mw = self._make_middleware()
        assert mw._normalize_path("/api/v1/users/12345/actions") == "/api/v1/users/{id}/actions"

    def test_normalize_path_preserves_non_id_segments(self):
        mw = self._make_middleware()
        assert mw._normalize_path("/api/v1/agent/status") == "/api/v1/agent/status"


# ============================================================================
# Sentry Integration Tests
# ============================================================================

class TestSentryIntegration:
    """Tests for Sentry initialization, capture helpers, and _before_send."""

    @patch("autoyield.monitoring.sentry.get_settings")
    def test_init_sentry_no_dsn_configured(self, mock_get_settings):
        mock_get_settings.return_value = MagicMock(sentry_dsn="")

        from autoyield.monitoring.sentry import init_sentry

        assert init_sentry() is False

    def test_capture_exception_returns_none_when_disabled(self):
        from autoyield.monitoring.sentry import capture_exception

        assert capture_exception(ValueError("test error"), tags={"component": "cron"}) is None

    def test_add_breadcrumb_noop_when_disabled(self):
        from autoyield.monitoring.sentry import add_breadcrumb

        with patch("autoyield.monitoring.sentry.sentry_sdk.add_breadcrumb") as sdk_breadcrumb:
            add_breadcrumb("batch started", category="cron")

        sdk_breadcrumb.assert_not_called()

    def test_before_send_filters_connection_reset(self):
        from autoyield.monitoring.sentry import _before_send

        hint = {"exc_info": (ConnectionResetError, ConnectionResetError("reset"), None)}
        assert _before_send({"event_id": "abc"}, hint) is None

    def test_before_send_filters_client_errors(self):
        from autoyield.monitoring.sentry import _before_send

        error = RateLimitExceeded("Daily transfer limit reached")
        hint = {"exc_info": (RateLimitExceeded, error, None)}
        assert _before_send({"event_id": "abc"}, hint) is None

    def test_before_send_passes_regular_error(self):
        from autoyield.monitoring.sentry import _before_send

        hint = {"exc_info": (ValueError, ValueError("bad value"), None)}
        assert _before_send({"event_id": "abc"}, hint) is not None

    def test_before_send_filters_sensitive_headers(self):
        from autoyield.monitoring.sentry import _before_send

        event = {
            "request": {
                "headers": {
                    "authorization": "Bearer cron-secret",
                    "content-type": "application/json",
                },
            },
        }

        result = _before_send(event, {})

        assert result["request"]["headers"]["authorization"] == "[Filtered]"
        assert result["request"]["headers"]["content-type"] == "application/json"

    def test_before_send_filters_key_material(self):
        from autoyield.monitoring.sentry import _before_send

        event = {
            "request": {
                "data": {
                    "recipient": "0x" + "44" * 20,
                    "private_key": "0x" + "4c" * 32,
                    "signature": "0xdead",
                },
            },
        }

        result = _before_send(event, {})

        assert result["request"]["data"]["private_key"] == "[Filtered]"
        assert result["request"]["data"]["signature"] == "[Filtered]"
        assert result["request"]["data"]["recipient"] == "0x" + "44" * 20
