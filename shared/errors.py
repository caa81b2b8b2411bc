"""
Shared error handling for the Space Telemetry Gateway.

Every failure that crosses the gateway boundary is one of the typed errors
below; raw transport exceptions never reach the presentation layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    service: Optional[str] = None
    details: Dict[str, Any] = {}


class GatewayError(Exception):
    """Base exception for gateway failures."""

    code = "GATEWAY_ERROR"
    http_status = 500

    def __init__(self, message: str, service: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.service = service
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            service=self.service,
            details=self.details
        )


class TransportError(GatewayError):
    """Network, DNS or connection failure before any response arrived."""

    code = "TRANSPORT_ERROR"
    http_status = 502


class UpstreamError(GatewayError):
    """Provider answered with a non-2xx status."""

    code = "UPSTREAM_ERROR"
    http_status = 502

    def __init__(self, status_code: int, message: str = "Upstream error",
                 service: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        details = dict(details or {})
        details.setdefault("status_code", status_code)
        super().__init__(message, service, details)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500 and self.status_code != 429

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class RateLimited(UpstreamError):
    """HTTP 429 from the provider, or the local budget is spent."""

    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str = "Rate limit exceeded", service: Optional[str] = None,
                 retry_after: Optional[float] = None, details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        details = dict(details or {})
        if retry_after is not None:
            details.setdefault("retry_after", retry_after)
        super().__init__(429, message, service, details)


class CircuitOpenError(GatewayError):
    """Breaker short-circuited the call; no network attempt was made."""

    code = "CIRCUIT_OPEN"
    http_status = 503


class MalformedResponseError(GatewayError):
    """Payload could not be decoded (missing sentinels, no data lines)."""

    code = "MALFORMED_RESPONSE"
    http_status = 502

    def __init__(self, message: str = "Malformed response", service: Optional[str] = None,
                 partial: Any = None, details: Optional[Dict[str, Any]] = None):
        self.partial = partial
        super().__init__(message, service, details)


class GatewayTimeoutError(GatewayError):
    """Upstream call did not finish within the per-call timeout."""

    code = "TIMEOUT"
    http_status = 504


class ValidationError(GatewayError):
    """Query parameters rejected before any upstream call."""

    code = "VALIDATION_ERROR"
    http_status = 400


class UnknownServiceError(ValidationError):
    """No gateway client is registered under the requested service key."""

    code = "UNKNOWN_SERVICE"
    http_status = 404
