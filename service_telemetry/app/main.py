"""
Telemetry Gateway service.

Thin FastAPI surface over :class:`TelemetryGateway`; every data route
delegates to one typed gateway operation and returns
``{"data": ..., "cached": bool, "stale": bool}``.
"""

from typing import Any, Dict, Optional

from fastapi import Query

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config

from .adapters.horizons_client import describe_catalog
from .caching import FetchResult
from .gateway import DSN, HORIZONS, NASA, SBDB, TelemetryGateway


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    return value


def envelope(result: FetchResult[Any]) -> Dict[str, Any]:
    """Response body for a gateway result."""
    return result.to_dict(value=_serialize(result.value))


class TelemetryGatewayService(BaseService):
    """Telemetry gateway service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 gateway: Optional[TelemetryGateway] = None):
        super().__init__("telemetry_gateway", 8000, config or get_config("telemetry_gateway", 8000))
        self.gateway = gateway or TelemetryGateway.from_config(self.config, metrics=self.metrics)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.gateway.aclose()

        self._setup_gateway_routes()
        self._setup_data_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        """Breaker state per upstream service."""
        return {
            key: self.gateway.get_circuit_state(key).value
            for key in self.gateway.service_keys
        }

    def _setup_gateway_routes(self):
        """Set up budget and health routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "telemetry_gateway",
                "version": "1.0.0",
                "services": list(self.gateway.service_keys),
            }

        @self.app.get("/api/v1/status")
        async def gateway_status():
            """Rate budget and breaker state for every upstream."""
            return {"services": self.gateway.status(), "cache": self.gateway.cache.stats()}

        @self.app.get("/api/v1/rate-limit/{service_key}")
        async def rate_limit_status(service_key: str):
            status = self.gateway.get_rate_limit_status(service_key)
            return {"remaining": status.remaining, "reset_at": status.reset_at, "limit": status.limit}

        @self.app.get("/api/v1/circuit/{service_key}")
        async def circuit_state(service_key: str):
            return {"service": service_key, "state": self.gateway.get_circuit_state(service_key).value}

    def _setup_data_routes(self):
        """Set up one route per typed gateway operation."""

        @self.app.get("/api/v1/apod")
        async def apod(date: Optional[str] = Query(None, description="YYYY-MM-DD")):
            return envelope(await self.gateway.fetch(NASA, {"operation": "apod", "date": date}))

        @self.app.get("/api/v1/mars-photos/{rover}")
        async def mars_photos(
            rover: str,
            sol: Optional[int] = Query(None, ge=0),
            earth_date: Optional[str] = Query(None),
            camera: Optional[str] = Query(None),
            page: int = Query(1, ge=1),
        ):
            query = {
                "operation": "rover_photos",
                "rover": rover,
                "sol": sol,
                "earth_date": earth_date,
                "camera": camera,
                "page": page,
            }
            return envelope(await self.gateway.fetch(NASA, query))

        @self.app.get("/api/v1/mars-photos/{rover}/latest")
        async def latest_mars_photos(rover: str, limit: int = Query(25, ge=1, le=100)):
            query = {"operation": "latest_rover_photos", "rover": rover, "limit": limit}
            return envelope(await self.gateway.fetch(NASA, query))

        @self.app.get("/api/v1/mars-photos/{rover}/manifest")
        async def rover_manifest(rover: str):
            return envelope(await self.gateway.fetch(NASA, {"operation": "rover_manifest", "rover": rover}))

        @self.app.get("/api/v1/neo/feed")
        async def neo_feed(start_date: Optional[str] = Query(None), end_date: Optional[str] = Query(None)):
            query = {"operation": "neo_feed", "start_date": start_date, "end_date": end_date}
            return envelope(await self.gateway.fetch(NASA, query))

        @self.app.get("/api/v1/asteroids/close-approach")
        async def close_approaches(
            des: Optional[str] = Query(None),
            date_min: str = Query("now"),
            date_max: str = Query("+60"),
            dist_max: str = Query("0.05"),
            limit: Optional[int] = Query(None, ge=1),
        ):
            query = {
                "operation": "close_approaches",
                "designation": des,
                "date_min": date_min,
                "date_max": date_max,
                "dist_max": dist_max,
                "limit": limit,
            }
            return envelope(await self.gateway.fetch(SBDB, query))

        @self.app.get("/api/v1/asteroids/sbdb")
        async def small_body(sstr: str = Query(..., min_length=1)):
            return envelope(await self.gateway.fetch(SBDB, {"operation": "small_body", "designation": sstr}))

        @self.app.get("/api/v1/asteroids/sentry")
        async def sentry_objects():
            return envelope(await self.gateway.fetch(SBDB, {"operation": "sentry"}))

        @self.app.get("/api/v1/asteroids/fireball")
        async def fireballs(limit: int = Query(50, ge=1, le=1000), date_min: Optional[str] = Query(None)):
            query = {"operation": "fireballs", "limit": limit, "date_min": date_min}
            return envelope(await self.gateway.fetch(SBDB, query))

        @self.app.get("/api/v1/asteroids/scout")
        async def scout_objects(tdes: Optional[str] = Query(None)):
            return envelope(await self.gateway.fetch(SBDB, {"operation": "scout", "designation": tdes}))

        @self.app.get("/api/v1/dsn")
        async def dsn_status():
            return envelope(await self.gateway.fetch(DSN, {"operation": "status"}))

        @self.app.get("/api/v1/spacecraft")
        async def spacecraft_catalog():
            return describe_catalog()

        @self.app.get("/api/v1/spacecraft/{spacecraft_id}")
        async def spacecraft_position(spacecraft_id: str):
            query = {"operation": "spacecraft_position", "spacecraft_id": spacecraft_id}
            return envelope(await self.gateway.fetch(HORIZONS, query))

        @self.app.get("/api/v1/interstellar/{object_id}")
        async def interstellar_object(object_id: str):
            query = {"operation": "object_ephemeris", "object_id": object_id}
            return envelope(await self.gateway.fetch(HORIZONS, query))


def create_app():
    """Create FastAPI application."""
    service = TelemetryGatewayService()
    return service.app


if __name__ == "__main__":
    service = TelemetryGatewayService()
    service.run()
