"""
Registry wiring one gateway client per upstream service.

Schedulers, breakers and the response cache are built here and injected
into the clients; nothing is module-level state, so several gateways can
live in one process (tests build one per case).
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreakerManager, CircuitBreakerState
from shared.config import BaseConfig
from shared.errors import UnknownServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryPolicy

from .adapters import DSNClient, GatewayClient, HorizonsClient, NasaApiClient, SmallBodyClient
from .caching import FetchResult, ResponseCache
from .ratelimit import RateLimitStatus, RateWindow, RequestScheduler

NASA = "nasa"
SBDB = "sbdb"
DSN = "dsn"
HORIZONS = "horizons"

SERVICE_KEYS = (NASA, SBDB, DSN, HORIZONS)


class TelemetryGateway:
    """Entry point for the presentation layer.

    ``fetch(service_key, query)`` returns typed records wrapped in a
    :class:`FetchResult`; the rate-limit and circuit views back the UI's
    budget badges and health displays.
    """

    def __init__(self,
                 clients: Dict[str, GatewayClient],
                 cache: ResponseCache,
                 breakers: CircuitBreakerManager,
                 http_client: Optional[httpx.AsyncClient] = None,
                 owns_http_client: bool = False):
        self._clients = clients
        self.cache = cache
        self.breakers = breakers
        self._http_client = http_client
        self._owns_http_client = owns_http_client
        self.logger = get_logger("telemetry.gateway")

    @classmethod
    def from_config(cls,
                    config: BaseConfig,
                    metrics: Optional[MetricsCollector] = None,
                    http_client: Optional[httpx.AsyncClient] = None,
                    clock: Callable[[], float] = time.monotonic,
                    wall_clock: Callable[[], float] = time.time,
                    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> "TelemetryGateway":
        """Build the four service clients from configuration."""
        owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(
                timeout=config.request_timeout_seconds,
                follow_redirects=True,
            )

        def on_state_change(name: str, state: CircuitBreakerState) -> None:
            if metrics is not None:
                metrics.record_breaker_state(name, state)

        def on_budget_change(name: str, remaining: int) -> None:
            if metrics is not None:
                metrics.record_rate_budget(name, remaining)

        breakers = CircuitBreakerManager(clock=clock, on_state_change=on_state_change)
        cache = ResponseCache(max_entries=config.cache_max_entries, clock=clock)
        retry_config = config.retry_config()
        policy = RateWindow(config.rate_limit_policy.lower())

        limits = {
            NASA: config.nasa_rate_limit,
            SBDB: config.unmetered_rate_limit,
            DSN: config.unmetered_rate_limit,
            HORIZONS: config.unmetered_rate_limit,
        }
        base_urls = {
            NASA: config.nasa_api_url,
            SBDB: config.sbdb_api_url,
            DSN: config.dsn_feed_url,
            HORIZONS: config.horizons_api_url,
        }
        client_classes = {
            NASA: NasaApiClient,
            SBDB: SmallBodyClient,
            DSN: DSNClient,
            HORIZONS: HorizonsClient,
        }

        clients: Dict[str, GatewayClient] = {}
        for key in SERVICE_KEYS:
            scheduler = RequestScheduler(
                service=key,
                capacity=limits[key],
                window_seconds=config.rate_limit_window_seconds,
                inter_call_delay=config.inter_call_delay_seconds,
                policy=policy,
                max_queue_size=config.scheduler_max_queue_size,
                clock=clock,
                wall_clock=wall_clock,
                sleep=sleep,
                on_budget_change=on_budget_change,
            )
            breaker = breakers.get_circuit_breaker(
                key,
                failure_threshold=config.breaker_failure_threshold,
                recovery_timeout=config.breaker_cooldown_seconds,
            )
            extra = {"api_key": config.nasa_api_key} if key == NASA else {}
            clients[key] = client_classes[key](
                key,
                base_urls[key],
                scheduler,
                breaker,
                RetryPolicy(retry_config, name=key, sleep=sleep),
                cache,
                http_client,
                metrics=metrics,
                timeout=config.request_timeout_seconds,
                user_agent=config.user_agent,
                **extra,
            )
            if metrics is not None:
                metrics.record_breaker_state(key, breaker.state)
                metrics.record_rate_budget(key, limits[key])

        return cls(clients, cache, breakers, http_client, owns_http_client)

    def client(self, service_key: str) -> GatewayClient:
        try:
            return self._clients[service_key]
        except KeyError:
            raise UnknownServiceError(
                f"Unknown service '{service_key}'",
                service=service_key,
                details={"services": sorted(self._clients)}
            )

    @property
    def service_keys(self):
        return tuple(self._clients)

    async def fetch(self, service_key: str, query: Dict[str, Any]) -> FetchResult[Any]:
        """Run ``query`` against ``service_key``.

        ``query`` names an ``operation`` plus its parameters, e.g.
        ``{"operation": "spacecraft_position", "spacecraft_id": "juno"}``.
        """
        return await self.client(service_key).fetch(query)

    def get_rate_limit_status(self, service_key: str) -> RateLimitStatus:
        return self.client(service_key).rate_limit_status()

    def get_circuit_state(self, service_key: str) -> CircuitBreakerState:
        return self.client(service_key).circuit_state()

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Budget and breaker snapshot for every service."""
        return {
            key: {
                "rate_limit": client.rate_limit_status().to_dict(),
                "circuit": client.breaker.get_state(),
            }
            for key, client in self._clients.items()
        }

    async def aclose(self) -> None:
        """Stop dispatch loops, background refreshes and the owned HTTP client."""
        for client in self._clients.values():
            await client.scheduler.aclose()
        await self.cache.aclose()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
        self.logger.info("Telemetry gateway closed")
