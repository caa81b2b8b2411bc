"""
Unit tests for the retry policy.
"""

from unittest.mock import AsyncMock

import pytest

from shared.errors import (
    CircuitOpenError,
    GatewayTimeoutError,
    MalformedResponseError,
    RateLimited,
    TransportError,
    UpstreamError,
)
from shared.retry import (
    RetryConfig,
    RetryPolicy,
    compute_delay,
    delay_schedule,
    is_retryable,
    retry_on_exception,
)


class TestBackoff:
    """Test cases for delay computation."""

    def test_delay_sequence_is_capped(self):
        config = RetryConfig(base_delay=1.0, backoff_multiplier=2.0, max_delay=30.0)

        assert delay_schedule(config, 7) == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_first_retry_uses_base_delay(self):
        assert compute_delay(1, RetryConfig(base_delay=0.5)) == 0.5

    def test_jitter_stays_within_cap(self):
        config = RetryConfig(base_delay=10.0, max_delay=10.0, jitter=True)

        for attempt in range(1, 5):
            assert 0.0 <= compute_delay(attempt, config) <= 10.0

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class TestRetryable:
    """Test cases for retry classification."""

    @pytest.mark.parametrize("error", [
        TransportError("dns"),
        GatewayTimeoutError("slow"),
        UpstreamError(500, "boom"),
        UpstreamError(503, "unavailable"),
        RateLimited("429"),
    ])
    def test_transient_errors_are_retryable(self, error):
        assert is_retryable(error)

    @pytest.mark.parametrize("error", [
        UpstreamError(400, "bad"),
        UpstreamError(404, "missing"),
        CircuitOpenError("open"),
        MalformedResponseError("garbled"),
        ValueError("bug"),
    ])
    def test_other_errors_are_not_retryable(self, error):
        assert not is_retryable(error)


class TestRetryPolicy:
    """Test cases for RetryPolicy."""

    @pytest.fixture
    def policy(self, clock):
        config = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=30.0, backoff_multiplier=2.0)
        return RetryPolicy(config, name="test", sleep=clock.sleep)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, policy, clock):
        operation = AsyncMock(side_effect=[TransportError("reset"), UpstreamError(502, "bad gateway"), "ok"])

        assert await policy.execute(operation) == "ok"
        assert operation.await_count == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_no_delay_before_first_attempt(self, policy, clock):
        operation = AsyncMock(return_value="ok")

        await policy.execute(operation)

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, policy, clock):
        error = UpstreamError(404, "not found")
        operation = AsyncMock(side_effect=error)

        with pytest.raises(UpstreamError) as exc_info:
            await policy.execute(operation)

        assert exc_info.value is error
        assert operation.await_count == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error_unchanged(self, policy):
        errors = [TransportError("first"), TransportError("second"), RateLimited("third", retry_after=5)]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(RateLimited) as exc_info:
            await policy.execute(operation)

        assert exc_info.value is errors[-1]
        assert exc_info.value.retry_after == 5
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_per_call_config_overrides_default(self, policy, clock):
        operation = AsyncMock(side_effect=TransportError("down"))

        with pytest.raises(TransportError):
            await policy.execute(operation, RetryConfig(max_attempts=5, base_delay=0.5, max_delay=1.0))

        assert operation.await_count == 5
        assert clock.sleeps == [0.5, 1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_decorator_retries_coroutine(self):
        calls = []

        @retry_on_exception(RetryConfig(max_attempts=2, base_delay=0.0))
        async def flaky(value):
            calls.append(value)
            if len(calls) == 1:
                raise GatewayTimeoutError("slow")
            return value * 2

        assert await flaky(21) == 42
        assert calls == [21, 21]
