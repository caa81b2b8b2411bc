"""
Shared metrics configuration for the Space Telemetry Gateway.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

from shared.circuit_breaker import CircuitBreakerState

BREAKER_STATE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.HALF_OPEN: 1,
    CircuitBreakerState.OPEN: 2,
}


class MetricsCollector:
    """Centralized metrics collector for a service.

    Each collector owns its registry so several gateways (or test cases)
    can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_gateway_metrics()

    def _setup_gateway_metrics(self):
        """Set up upstream gateway metrics."""
        self._metrics["upstream_requests_total"] = Counter(
            "upstream_requests_total",
            "Upstream requests dispatched",
            ["service", "outcome"],
            registry=self.registry
        )

        self._metrics["upstream_request_duration_seconds"] = Histogram(
            "upstream_request_duration_seconds",
            "Upstream request duration in seconds",
            ["service"],
            registry=self.registry
        )

        self._metrics["cache_lookups_total"] = Counter(
            "cache_lookups_total",
            "Response cache lookups",
            ["service", "status"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_state"] = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0 closed, 1 half-open, 2 open)",
            ["service"],
            registry=self.registry
        )

        self._metrics["rate_budget_remaining"] = Gauge(
            "rate_budget_remaining",
            "Calls left in the current rate window",
            ["service"],
            registry=self.registry
        )

    def render(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_upstream_request(self, service: str, outcome: str, duration: float):
        """Record one dispatched upstream call."""
        self._metrics["upstream_requests_total"].labels(service=service, outcome=outcome).inc()
        self._metrics["upstream_request_duration_seconds"].labels(service=service).observe(duration)

    def record_cache_lookup(self, service: str, status: str):
        self._metrics["cache_lookups_total"].labels(service=service, status=status).inc()

    def record_breaker_state(self, service: str, state: CircuitBreakerState):
        self._metrics["circuit_breaker_state"].labels(service=service).set(BREAKER_STATE_VALUES[state])

    def record_rate_budget(self, service: str, remaining: int):
        self._metrics["rate_budget_remaining"].labels(service=service).set(remaining)

    def sample(self, name: str, **labels) -> Optional[float]:
        """Current value of a labelled sample, mostly for tests."""
        return self.registry.get_sample_value(name, labels)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
