"""
Unit tests for the Telemetry Gateway service routes.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from service_telemetry.app.gateway import TelemetryGateway
from service_telemetry.app.main import TelemetryGatewayService, envelope
from service_telemetry.app.caching import FetchResult
from shared.config import get_config

APOD_PAYLOAD = {
    "date": "2024-01-01",
    "title": "Orion Nebula",
    "explanation": "A stellar nursery.",
    "url": "https://apod.nasa.gov/apod/image/orion.jpg",
    "media_type": "image",
}

VECTORS_TEXT = """\
Center body name: Earth (399)                     {source: DE441}
$$SOE
2460310.500000000 = A.D. 2024-Jan-01 00:00:00.0000 TDB
 X = 3.0E+08 Y = 4.0E+08 Z = 0.0E+00
 VX= 1.0E+01 VY= 0.0E+00 VZ= 0.0E+00
$$EOE
"""

PARTIAL_VECTORS_TEXT = """\
$$SOE
2460310.500000000 = A.D. 2024-Jan-01 00:00:00.0000 TDB
 X = n.a. Y = n.a. Z = n.a.
 VX= 1.0E+01 VY= 0.0E+00 VZ= 0.0E+00
$$EOE
"""


class FakeUpstream:
    """Answers every provider from canned payloads; tests can override."""

    def __init__(self):
        self.requests = []
        self.override = None
        self.horizons_text = VECTORS_TEXT

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.override is not None:
            return self.override(request)
        if request.url.path == "/planetary/apod":
            return httpx.Response(200, json=APOD_PAYLOAD)
        if request.url.path == "/api/horizons.api":
            return httpx.Response(200, json={"result": self.horizons_text})
        return httpx.Response(404)


class TestTelemetryGatewayService:
    """Test cases for TelemetryGatewayService."""

    @pytest.fixture
    def upstream(self):
        return FakeUpstream()

    @pytest.fixture
    def service(self, upstream):
        config = get_config(
            "telemetry_gateway",
            8000,
            inter_call_delay_seconds=0.0,
            retry_max_attempts=1,
        )
        gateway = TelemetryGateway.from_config(
            config,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        )
        return TelemetryGatewayService(config=config, gateway=gateway)

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as test_client:
            yield test_client

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["services"] == ["nasa", "sbdb", "dsn", "horizons"]

    def test_health_reports_breaker_states(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {
            "nasa": "closed",
            "sbdb": "closed",
            "dsn": "closed",
            "horizons": "closed",
        }

    def test_service_exposed_on_app_state(self, service):
        assert service.app.state.gateway_service is service

    def test_rate_limit_status(self, client):
        response = client.get("/api/v1/rate-limit/nasa")

        assert response.status_code == 200
        data = response.json()
        assert data["limit"] == 950
        assert data["remaining"] == 950
        assert data["reset_at"] > 0

    def test_unknown_service_is_404(self, client):
        response = client.get("/api/v1/circuit/esa")

        assert response.status_code == 404
        assert response.json()["code"] == "UNKNOWN_SERVICE"

    def test_apod_envelope_and_cache_flag(self, client, upstream):
        first = client.get("/api/v1/apod")
        second = client.get("/api/v1/apod")

        assert first.status_code == 200
        assert first.json()["data"]["title"] == "Orion Nebula"
        assert first.json()["cached"] is False
        assert second.json()["cached"] is True
        assert second.json()["stale"] is False
        assert len(upstream.requests) == 1

        status = client.get("/api/v1/rate-limit/nasa").json()
        assert status["remaining"] == 949

    def test_spacecraft_position(self, client):
        response = client.get("/api/v1/spacecraft/voyager-1")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Voyager 1"
        assert data["distance_km"] == pytest.approx(5.0e8)
        assert data["communication_delay_round_trip_seconds"] == pytest.approx(2 * 5.0e8 / 299792.458)
        assert data["timestamp_utc"].startswith("2024-01-01T00:00:00")

    def test_partial_record_attached_to_malformed_error(self, client, upstream):
        upstream.horizons_text = PARTIAL_VECTORS_TEXT

        response = client.get("/api/v1/spacecraft/juno")

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "MALFORMED_RESPONSE"
        assert body["partial"]["position_km"] is None
        assert body["partial"]["velocity_km_per_sec"] == {"x": 10.0, "y": 0.0, "z": 0.0}

    def test_invalid_rover_is_400_without_request(self, client, upstream):
        response = client.get("/api/v1/mars-photos/zhurong", params={"sol": 1})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert upstream.requests == []

    def test_open_circuit_is_reported_distinctly(self, client, upstream):
        upstream.override = lambda request: httpx.Response(503)

        for _ in range(3):
            response = client.get("/api/v1/apod")
            assert response.status_code == 502
            assert response.json()["code"] == "UPSTREAM_ERROR"

        response = client.get("/api/v1/apod")
        assert response.status_code == 503
        assert response.json()["code"] == "CIRCUIT_OPEN"
        assert len(upstream.requests) == 3

        assert client.get("/api/v1/circuit/nasa").json()["state"] == "open"

    def test_rate_limited_sets_retry_after(self, client, upstream):
        upstream.override = lambda request: httpx.Response(429, headers={"Retry-After": "60"})

        response = client.get("/api/v1/apod")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["code"] == "RATE_LIMITED"

    def test_gateway_status(self, client):
        response = client.get("/api/v1/status")

        assert response.status_code == 200
        data = response.json()
        assert set(data["services"]) == {"nasa", "sbdb", "dsn", "horizons"}
        assert data["cache"]["entries"] == 0

    def test_spacecraft_catalog(self, client):
        data = client.get("/api/v1/spacecraft").json()

        assert data["spacecraft"]["juno"]["naif_id"] == "-61"
        assert "3I" in data["interstellar"]

    def test_metrics_endpoint(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text


class TestEnvelope:
    """Test cases for response envelopes."""

    def test_serializes_records_in_lists(self):
        class Record:
            def to_dict(self):
                return {"id": 1}

        body = envelope(FetchResult([Record(), Record()], cached=True, stale=True))

        assert body == {"data": [{"id": 1}, {"id": 1}], "cached": True, "stale": True}

    def test_plain_values_pass_through(self):
        assert envelope(FetchResult({"a": 1})) == {"data": {"a": 1}, "cached": False, "stale": False}
