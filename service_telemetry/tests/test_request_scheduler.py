"""
Unit tests for the request scheduler.
"""

import asyncio

import pytest

from conftest import settle
from service_telemetry.app.ratelimit import RateBudget, RateWindow, RequestScheduler
from shared.errors import RateLimited, UpstreamError


def make_scheduler(clock, capacity=2, window=1.0, delay=0.0, **kwargs):
    return RequestScheduler(
        service="test",
        capacity=capacity,
        window_seconds=window,
        inter_call_delay=delay,
        clock=clock,
        wall_clock=lambda: 1_700_000_000.0 + clock(),
        sleep=kwargs.pop("sleep", clock.sleep),
        **kwargs
    )


def dispatches_per_fixed_window(times, window, window_start=0.0):
    """Dispatch counts per fixed window, rolling the window the way RateBudget does."""
    counts = [0]
    for moment in times:
        if moment >= window_start + window:
            window_start = moment
            counts.append(0)
        counts[-1] += 1
    return counts


class TestRateBudget:
    """Test cases for RateBudget."""

    def test_fixed_window_resets_whole_budget(self):
        budget = RateBudget(capacity=2, window_length=10.0, policy=RateWindow.FIXED)

        assert budget.try_consume(0.0) == 0.0
        assert budget.try_consume(1.0) == 0.0
        assert budget.try_consume(2.0) == pytest.approx(8.0)

        assert budget.try_consume(10.0) == 0.0
        assert budget.used == 1

    def test_sliding_window_frees_oldest_slot(self):
        budget = RateBudget(capacity=2, window_length=10.0)

        assert budget.try_consume(0.0) == 0.0
        assert budget.try_consume(4.0) == 0.0
        assert budget.try_consume(5.0) == pytest.approx(5.0)

        assert budget.try_consume(10.0) == 0.0
        assert budget.try_consume(11.0) == pytest.approx(3.0)

    def test_refund_returns_unit(self):
        budget = RateBudget(capacity=1, window_length=10.0)
        budget.try_consume(0.0)
        budget.refund()

        assert budget.remaining == 1
        assert budget.try_consume(0.5) == 0.0


class TestRequestScheduler:
    """Test cases for RequestScheduler."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", [RateWindow.SLIDING, RateWindow.FIXED])
    async def test_third_call_waits_for_window(self, clock, policy):
        """capacity=2, window=1s: two dispatch at t=0, the third at t>=1s."""
        scheduler = make_scheduler(clock, policy=policy)
        dispatched = []

        async def op(label):
            dispatched.append((label, clock()))
            return label

        results = await asyncio.gather(*(scheduler.enqueue(lambda i=i: op(i)) for i in range(3)))

        assert results == [0, 1, 2]
        assert dispatched[0] == (0, 0.0)
        assert dispatched[1] == (1, 0.0)
        assert dispatched[2][0] == 2
        assert dispatched[2][1] >= 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", [RateWindow.SLIDING, RateWindow.FIXED])
    async def test_never_exceeds_capacity_in_any_window(self, clock, policy):
        scheduler = make_scheduler(clock, capacity=3, window=1.0, delay=0.25, policy=policy)
        times = []

        async def op():
            times.append(clock())

        await asyncio.gather(*(scheduler.enqueue(op) for _ in range(12)))

        assert len(times) == 12
        if policy is RateWindow.SLIDING:
            for i in range(len(times) - 3):
                assert times[i + 3] - times[i] >= 1.0
        else:
            assert max(dispatches_per_fixed_window(times, window=1.0)) <= 3

    @pytest.mark.asyncio
    async def test_fixed_window_allows_burst_across_reset(self, clock):
        scheduler = make_scheduler(clock, policy=RateWindow.FIXED)
        times = []

        async def op():
            times.append(clock())

        await scheduler.enqueue(op)
        clock.advance(0.5)
        await scheduler.enqueue(op)
        await asyncio.gather(scheduler.enqueue(op), scheduler.enqueue(op))

        # Two calls just before the reset and two right after it.
        assert times == [0.0, 0.5, 1.0, 1.0]
        assert max(dispatches_per_fixed_window(times, window=1.0)) == 2

    @pytest.mark.asyncio
    async def test_sliding_window_spreads_the_same_burst(self, clock):
        scheduler = make_scheduler(clock)
        times = []

        async def op():
            times.append(clock())

        await scheduler.enqueue(op)
        clock.advance(0.5)
        await scheduler.enqueue(op)
        await asyncio.gather(scheduler.enqueue(op), scheduler.enqueue(op))

        assert times == [0.0, 0.5, 1.0, 1.5]

    @pytest.mark.asyncio
    async def test_dispatch_order_matches_enqueue_order(self, clock):
        scheduler = make_scheduler(clock, capacity=2, window=1.0)
        order = []

        async def op(i):
            order.append(i)

        await asyncio.gather(*(scheduler.enqueue(lambda i=i: op(i)) for i in range(7)))

        assert order == list(range(7))

    @pytest.mark.asyncio
    async def test_failing_call_does_not_affect_siblings(self, clock):
        scheduler = make_scheduler(clock, capacity=5)
        error = UpstreamError(500, "boom", service="test")

        async def ok():
            return "ok"

        async def fail():
            raise error

        results = await asyncio.gather(
            scheduler.enqueue(ok),
            scheduler.enqueue(fail),
            scheduler.enqueue(ok),
            return_exceptions=True
        )

        assert results[0] == "ok"
        assert results[1] is error
        assert results[2] == "ok"

    @pytest.mark.asyncio
    async def test_slow_call_does_not_block_dispatch(self, clock):
        scheduler = make_scheduler(clock, capacity=5)
        release = asyncio.Event()
        started = []

        async def slow():
            started.append("slow")
            await release.wait()
            return "slow"

        async def fast():
            started.append("fast")
            return "fast"

        slow_task = asyncio.create_task(scheduler.enqueue(slow))
        await asyncio.sleep(0)
        fast_result = await scheduler.enqueue(fast)

        assert fast_result == "fast"
        assert started == ["slow", "fast"]

        release.set()
        assert await slow_task == "slow"

    @pytest.mark.asyncio
    async def test_status_reports_remaining_and_reset(self, clock):
        scheduler = make_scheduler(clock, capacity=5, window=60.0)

        async def op():
            return None

        await scheduler.enqueue(op)
        await scheduler.enqueue(op)
        status = scheduler.status()

        assert status.limit == 5
        assert status.remaining == 3
        assert status.reset_at == pytest.approx(1_700_000_000.0 + 60.0)
        assert status.to_dict()["service"] == "test"

    @pytest.mark.asyncio
    async def test_budget_callback_receives_remaining(self, clock):
        seen = []
        scheduler = make_scheduler(clock, capacity=3, on_budget_change=lambda s, r: seen.append((s, r)))

        async def op():
            return None

        await scheduler.enqueue(op)
        await scheduler.enqueue(op)

        assert seen == [("test", 2), ("test", 1)]

    @pytest.mark.asyncio
    async def test_full_queue_raises_rate_limited(self, clock):
        scheduler = make_scheduler(clock, capacity=1, max_queue_size=1)

        async def op():
            return "done"

        first = asyncio.create_task(scheduler.enqueue(op))
        await asyncio.sleep(0)

        with pytest.raises(RateLimited):
            await scheduler.enqueue(op)

        assert await first == "done"

    @pytest.mark.asyncio
    async def test_aclose_cancels_queued_calls(self, clock):
        scheduler = make_scheduler(clock, capacity=1, window=3600.0, sleep=asyncio.sleep)

        async def op():
            return None

        await scheduler.enqueue(op)
        waiting = asyncio.create_task(scheduler.enqueue(op))
        await settle()

        await scheduler.aclose()

        with pytest.raises(asyncio.CancelledError):
            await waiting

    def test_rejects_invalid_capacity(self, clock):
        with pytest.raises(ValueError):
            make_scheduler(clock, capacity=0)
