"""
Shared utilities for the Space Telemetry Gateway.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Typed gateway errors and responses
- retry: Bounded exponential backoff
- circuit_breaker: Resilient external call protection
- tracing: OpenTelemetry spans for upstream calls
- base_service: FastAPI service scaffolding

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
