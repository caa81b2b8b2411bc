"""
Unit tests for the circuit breaker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerManager, CircuitBreakerState
from shared.errors import (
    CircuitOpenError,
    GatewayTimeoutError,
    MalformedResponseError,
    RateLimited,
    TransportError,
    UpstreamError,
)


async def fail_times(breaker, count, error_factory=lambda: TransportError("down", service="test")):
    for _ in range(count):
        with pytest.raises(Exception):
            await breaker.call(AsyncMock(side_effect=error_factory()))


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=3, recovery_timeout=5.0, name="test", clock=clock)

    @pytest.mark.asyncio
    async def test_opens_at_threshold_and_probes_after_cooldown(self, breaker, clock):
        """threshold=3, cooldown=5s: open after 3 failures, probe at t+6s."""
        await fail_times(breaker, 3)
        assert breaker.state == CircuitBreakerState.OPEN

        clock.advance(1.0)
        transport = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await breaker.call(transport)
        transport.assert_not_called()

        clock.advance(5.0)
        assert await breaker.call(transport) == "ok"
        transport.assert_called_once()
        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_does_not_open_before_threshold(self, breaker):
        await fail_times(breaker, 2)

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, breaker):
        await fail_times(breaker, 2)
        await breaker.call(AsyncMock(return_value="ok"))
        await fail_times(breaker, 2)

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_failed_probe_reopens_with_new_timestamp(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(6.0)

        with pytest.raises(TransportError):
            await breaker.call(AsyncMock(side_effect=TransportError("still down")))
        assert breaker.state == CircuitBreakerState.OPEN

        clock.advance(4.0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(AsyncMock(return_value="ok"))

        clock.advance(1.0)
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_only_one_probe_in_flight(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(5.0)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state == CircuitBreakerState.HALF_OPEN

        other = AsyncMock(return_value="other")
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(other)
        other.assert_not_called()
        assert exc_info.value.details["state"] == "half_open"

        release.set()
        assert await probe == "probe"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_returns_to_open(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(5.0)

        probe = asyncio.create_task(breaker.call(asyncio.Event().wait))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count(self, breaker):
        await fail_times(breaker, 5, lambda: UpstreamError(404, "not found"))

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_malformed_payload_does_not_count(self, breaker):
        await fail_times(breaker, 5, lambda: MalformedResponseError("bad"))

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_factory", [
        lambda: UpstreamError(503, "unavailable"),
        lambda: RateLimited("slow down"),
        lambda: GatewayTimeoutError("timed out"),
    ])
    async def test_upstream_health_failures_count(self, breaker, error_factory):
        await fail_times(breaker, 3, error_factory)

        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_client_error_on_probe_closes_circuit(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(5.0)

        with pytest.raises(UpstreamError):
            await breaker.call(AsyncMock(side_effect=UpstreamError(400, "bad query")))

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_state_change_callback(self, clock):
        changes = []
        breaker = CircuitBreaker(
            failure_threshold=1,
            recovery_timeout=1.0,
            name="cb",
            clock=clock,
            on_state_change=lambda name, state: changes.append((name, state))
        )

        await fail_times(breaker, 1)
        clock.advance(1.0)
        await breaker.call(AsyncMock(return_value=None))

        assert changes == [
            ("cb", CircuitBreakerState.OPEN),
            ("cb", CircuitBreakerState.HALF_OPEN),
            ("cb", CircuitBreakerState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_get_state_and_reset(self, breaker):
        await fail_times(breaker, 3)
        state = breaker.get_state()

        assert state["state"] == "open"
        assert state["failure_count"] == 3
        assert breaker.is_open()

        breaker.reset()
        assert breaker.state == CircuitBreakerState.CLOSED
        assert not breaker.is_open()

    def test_rejects_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class TestCircuitBreakerManager:
    """Test cases for CircuitBreakerManager."""

    def test_returns_same_breaker_per_name(self, clock):
        manager = CircuitBreakerManager(clock=clock)

        first = manager.get_circuit_breaker("nasa", failure_threshold=3, recovery_timeout=30.0)
        second = manager.get_circuit_breaker("nasa")

        assert first is second
        assert first.failure_threshold == 3

    def test_managers_are_independent(self, clock):
        a = CircuitBreakerManager(clock=clock).get_circuit_breaker("nasa")
        b = CircuitBreakerManager(clock=clock).get_circuit_breaker("nasa")

        assert a is not b

    def test_get_all_states(self, clock):
        manager = CircuitBreakerManager(clock=clock)
        manager.get_circuit_breaker("nasa")
        manager.get_circuit_breaker("horizons")

        states = manager.get_all_states()

        assert set(states) == {"nasa", "horizons"}
        assert states["nasa"]["state"] == "closed"
