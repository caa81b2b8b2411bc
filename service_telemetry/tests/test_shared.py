"""
Unit tests for the shared configuration, errors, metrics, logging and tracing helpers.
"""

import pytest

from shared.circuit_breaker import CircuitBreakerState
from shared.config import BaseConfig, get_config
from shared.errors import (
    CircuitOpenError,
    GatewayTimeoutError,
    MalformedResponseError,
    RateLimited,
    UnknownServiceError,
    UpstreamError,
    ValidationError,
)
from shared.logging import add_correlation_context, clear_context, set_request_id, set_service_key
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_operation


class TestConfig:
    """Test cases for configuration loading."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("NASA_API_KEY", raising=False)
        monkeypatch.delenv("TELEMETRY_NASA_API_KEY", raising=False)

        config = get_config("telemetry_gateway", 8000)

        assert config.service_name == "telemetry_gateway"
        assert config.nasa_rate_limit == 950
        assert config.nasa_api_key == "DEMO_KEY"
        assert config.breaker_failure_threshold == 3
        assert config.request_timeout_seconds == 12.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TELEMETRY_NASA_RATE_LIMIT", "500")
        monkeypatch.setenv("TELEMETRY_BREAKER_COOLDOWN_SECONDS", "45")

        config = BaseConfig()

        assert config.nasa_rate_limit == 500
        assert config.breaker_cooldown_seconds == 45.0

    def test_plain_nasa_api_key_variable(self, monkeypatch):
        monkeypatch.delenv("TELEMETRY_NASA_API_KEY", raising=False)
        monkeypatch.setenv("NASA_API_KEY", "from-env")

        assert BaseConfig().nasa_api_key == "from-env"

    def test_retry_config_projection(self):
        config = get_config("telemetry_gateway", 8000, retry_max_attempts=5, retry_base_delay_seconds=0.5)

        retry = config.retry_config()

        assert retry.max_attempts == 5
        assert retry.base_delay == 0.5
        assert retry.max_delay == 30.0
        assert retry.backoff_multiplier == 2.0


class TestErrors:
    """Test cases for the error taxonomy."""

    def test_to_response(self):
        error = CircuitOpenError("open", service="nasa", details={"state": "open"})

        response = error.to_response()

        assert response.code == "CIRCUIT_OPEN"
        assert response.service == "nasa"
        assert response.details == {"state": "open"}
        assert error.http_status == 503

    @pytest.mark.parametrize("status_code,client,server", [
        (400, True, False),
        (404, True, False),
        (429, False, False),
        (500, False, True),
        (503, False, True),
    ])
    def test_upstream_error_classification(self, status_code, client, server):
        error = UpstreamError(status_code, "failed")

        assert error.is_client_error is client
        assert error.is_server_error is server
        assert error.details["status_code"] == status_code

    def test_rate_limited_is_a_429_upstream_error(self):
        error = RateLimited(service="nasa", retry_after=30.0)

        assert isinstance(error, UpstreamError)
        assert error.status_code == 429
        assert error.details["retry_after"] == 30.0

    def test_malformed_response_keeps_partial(self):
        partial = object()

        assert MalformedResponseError("bad", partial=partial).partial is partial

    def test_http_statuses(self):
        assert GatewayTimeoutError("slow").http_status == 504
        assert ValidationError("bad").http_status == 400
        assert UnknownServiceError("esa").http_status == 404
        assert isinstance(UnknownServiceError("esa"), ValidationError)


class TestMetricsCollector:
    """Test cases for MetricsCollector."""

    def test_collectors_do_not_share_registries(self):
        first = MetricsCollector("a")
        second = MetricsCollector("b")

        first.record_cache_lookup("nasa", "fresh")

        assert first.sample("cache_lookups_total", service="nasa", status="fresh") == 1.0
        assert second.sample("cache_lookups_total", service="nasa", status="fresh") is None

    def test_gateway_gauges(self):
        metrics = MetricsCollector("telemetry_gateway")

        metrics.record_breaker_state("horizons", CircuitBreakerState.HALF_OPEN)
        metrics.record_rate_budget("nasa", 12)
        metrics.record_upstream_request("dsn", "success", 0.2)

        assert metrics.sample("circuit_breaker_state", service="horizons") == 1.0
        assert metrics.sample("rate_budget_remaining", service="nasa") == 12.0
        assert metrics.sample("upstream_requests_total", service="dsn", outcome="success") == 1.0
        assert b"upstream_request_duration_seconds" in metrics.render()

    def test_service_counters(self):
        metrics = MetricsCollector("telemetry_gateway")

        metrics.record_http_request("GET", "/api/v1/apod", 200, 0.05)
        metrics.record_health_check("ok")
        metrics.record_error("CIRCUIT_OPEN", "nasa")
        metrics.record_error("INTERNAL_ERROR")

        assert metrics.sample("http_requests_total", method="GET", endpoint="/api/v1/apod", status_code="200") == 1.0
        assert metrics.sample("health_check_total", status="ok") == 1.0
        assert metrics.sample("errors_total", error_type="CIRCUIT_OPEN", service="nasa") == 1.0
        assert metrics.sample("errors_total", error_type="INTERNAL_ERROR", service="telemetry_gateway") == 1.0


class TestLoggingContext:
    """Test cases for correlation context processors."""

    def test_request_id_and_service_are_added(self):
        request_id = set_request_id()
        set_service_key("sbdb")
        try:
            event = add_correlation_context(None, "info", {"event": "x"})
        finally:
            clear_context()

        assert event["request_id"] == request_id
        assert event["service"] == "sbdb"

    def test_explicit_service_is_not_overwritten(self):
        set_service_key("sbdb")
        try:
            event = add_correlation_context(None, "info", {"event": "x", "service": "nasa"})
        finally:
            clear_context()

        assert event["service"] == "nasa"


class TestTracing:
    """Test cases for tracing helpers."""

    def test_trace_operation_propagates_errors_unchanged(self):
        error = UpstreamError(502, "bad gateway")

        with pytest.raises(UpstreamError) as exc_info:
            with trace_operation("upstream.request", service="nasa", url=None):
                raise error

        assert exc_info.value is error

    def test_add_span_attributes_without_active_span(self):
        add_span_attributes(service="nasa", skipped=None)
