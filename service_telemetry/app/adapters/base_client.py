"""
Base gateway client composing cache, scheduler, breaker and retry.
"""

import inspect
import time
from types import UnionType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Optional,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerState
from shared.errors import (
    GatewayTimeoutError,
    MalformedResponseError,
    RateLimited,
    TransportError,
    UpstreamError,
    ValidationError,
)
from shared.logging import get_logger, set_service_key
from shared.metrics import MetricsCollector
from shared.retry import RetryPolicy
from shared.tracing import trace_operation

from ..caching import FetchResult, ResponseCache
from ..ratelimit import RateLimitStatus, RequestScheduler

T = TypeVar("T")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _scalar_type(annotation: Any) -> Any:
    """``int``, ``float`` or ``str`` behind ``T`` or ``Optional[T]``; None otherwise."""
    if get_origin(annotation) in (Union, UnionType):
        members = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(members) != 1:
            return None
        annotation = members[0]
    return annotation if annotation in (int, float, str) else None


def _coerce_param(service: str, name: str, value: Any, annotation: Any) -> Any:
    """Bring a query parameter to its declared scalar type.

    Numbers may arrive as strings from query strings; anything that does
    not convert cleanly is a bad query.
    """
    target = _scalar_type(annotation)
    if value is None or target is None:
        return value
    if isinstance(value, bool):
        pass
    elif isinstance(value, target):
        return value
    elif target is not str and isinstance(value, str):
        try:
            return target(value.strip())
        except ValueError:
            pass
    elif target is float and isinstance(value, int):
        return float(value)
    elif target is int and isinstance(value, float) and value.is_integer():
        return int(value)
    raise ValidationError(
        f"Parameter '{name}' must be {target.__name__}",
        service=service,
        details={"parameter": name, "value": repr(value)}
    )


def cache_key(service_key: str, operation: str, params: Dict[str, Any]) -> str:
    """Stable key for one logical query; parameter order does not matter."""
    parts = [f"{name}={params[name]}" for name in sorted(params) if params[name] is not None]
    return f"{service_key}:{operation}:" + "&".join(parts)


class GatewayClient:
    """One resilient client per upstream API family.

    A typed operation goes cache -> scheduler -> breaker -> retry -> HTTP GET,
    then decodes the body and writes the cache. Fresh cache hits never reach
    the scheduler, so they cost no rate budget.

    Subclasses declare ``OPERATIONS`` (query operation name -> method name)
    so :meth:`fetch` can route generic ``{"operation": ..., **params}`` queries.
    """

    OPERATIONS: Dict[str, str] = {}

    def __init__(self,
                 service_key: str,
                 base_url: str,
                 scheduler: RequestScheduler,
                 breaker: CircuitBreaker,
                 retry_policy: RetryPolicy,
                 cache: ResponseCache,
                 http_client: httpx.AsyncClient,
                 metrics: Optional[MetricsCollector] = None,
                 timeout: float = 12.0,
                 user_agent: Optional[str] = None):
        self.service_key = service_key
        self.base_url = base_url.rstrip("/")
        self.scheduler = scheduler
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.cache = cache
        self.http_client = http_client
        self.metrics = metrics
        self.timeout = timeout
        self.user_agent = user_agent
        self.logger = get_logger(f"telemetry.client.{service_key}")

    async def fetch(self, query: Dict[str, Any]) -> FetchResult[Any]:
        """Run a generic ``{"operation": name, **params}`` query."""
        params = dict(query)
        operation = params.pop("operation", None)
        if not operation:
            raise ValidationError("Query must name an operation", service=self.service_key)

        method_name = self.OPERATIONS.get(operation)
        if method_name is None:
            raise ValidationError(
                f"Unknown operation '{operation}'",
                service=self.service_key,
                details={"operations": sorted(self.OPERATIONS)}
            )

        method = getattr(self, method_name)
        try:
            inspect.signature(method).bind(**params)
        except TypeError as e:
            raise ValidationError(
                f"Invalid parameters for '{operation}': {e}",
                service=self.service_key
            ) from e

        hints = get_type_hints(method)
        params = {
            name: _coerce_param(self.service_key, name, value, hints.get(name))
            for name, value in params.items()
        }
        return await method(**params)

    def rate_limit_status(self) -> RateLimitStatus:
        return self.scheduler.status()

    def circuit_state(self) -> CircuitBreakerState:
        return self.breaker.state

    async def _cached(self,
                      key: str,
                      loader: Callable[[], Awaitable[T]],
                      ttl: float,
                      stale_window: float,
                      scheduled: bool = True) -> FetchResult[T]:
        """Serve ``key`` from cache, dispatching ``loader`` on a miss or refresh.

        With ``scheduled=False`` the loader runs directly; it must queue its
        own upstream calls through :meth:`_dispatch`, one per request.
        """
        set_service_key(self.service_key)
        fetcher = (lambda: self._dispatch(loader)) if scheduled else loader
        result = await self.cache.get_or_fetch(key, fetcher, ttl, stale_window)
        if self.metrics is not None:
            self.metrics.record_cache_lookup(self.service_key, result.cache_status.value)
        if result.stale:
            self.logger.info("Serving stale cached data", key=key)
        return result

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.service_key} returned a body that is not JSON",
                service=self.service_key,
                details={"url": str(response.request.url)}
            ) from e

    def _object(self, payload: Any, what: str = "payload") -> Dict[str, Any]:
        """``payload`` if it is a JSON object, else MalformedResponseError."""
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"{self.service_key} {what} is not an object",
                service=self.service_key,
                details={"type": type(payload).__name__}
            )
        return payload

    def _decode(self, decoder: Callable[..., T], *args: Any) -> T:
        """Run a record decoder; shape surprises become MalformedResponseError."""
        try:
            return decoder(*args)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise MalformedResponseError(
                f"Could not decode {self.service_key} payload: {e}",
                service=self.service_key,
                details={"error_type": type(e).__name__}
            ) from e

    async def _dispatch(self, loader: Callable[[], Awaitable[T]]) -> T:
        return await self.scheduler.enqueue(loader)

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Guarded GET: breaker around bounded retries around one request."""
        return await self.breaker.call(self.retry_policy.execute, lambda: self._request(url, params))

    async def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Single HTTP GET with every failure mapped to the gateway taxonomy."""
        headers = {"User-Agent": self.user_agent} if self.user_agent else None
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        start = time.perf_counter()
        outcome = "success"

        with trace_operation("upstream.request", tracer_name="telemetry.client",
                             service=self.service_key, url=url) as span:
            try:
                try:
                    response = await self.http_client.get(
                        url, params=clean_params or None, headers=headers, timeout=self.timeout
                    )
                except httpx.TimeoutException as e:
                    outcome = "timeout"
                    raise GatewayTimeoutError(
                        f"Request to {self.service_key} timed out after {self.timeout}s",
                        service=self.service_key,
                        details={"url": url}
                    ) from e
                except httpx.HTTPError as e:
                    outcome = "transport_error"
                    raise TransportError(
                        f"Request to {self.service_key} failed: {e}",
                        service=self.service_key,
                        details={"url": url, "error_type": type(e).__name__}
                    ) from e

                span.set_attribute("http.status_code", response.status_code)

                if response.status_code == 429:
                    outcome = "rate_limited"
                    raise RateLimited(
                        f"{self.service_key} rate limit exceeded",
                        service=self.service_key,
                        retry_after=_retry_after(response),
                        details={"url": url}
                    )

                if not response.is_success:
                    outcome = f"http_{response.status_code}"
                    self.logger.error(
                        "Upstream request failed",
                        url=url,
                        status_code=response.status_code,
                        response=response.text[:500]
                    )
                    raise UpstreamError(
                        response.status_code,
                        f"Unexpected status {response.status_code} from {self.service_key}",
                        service=self.service_key,
                        details={"url": url}
                    )

                self.logger.debug("Upstream request succeeded", url=url, status_code=response.status_code)
                return response
            finally:
                if self.metrics is not None:
                    self.metrics.record_upstream_request(
                        self.service_key, outcome, time.perf_counter() - start
                    )
