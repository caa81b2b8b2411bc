"""
FIFO request scheduler enforcing a per-service rate budget.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, TypeVar

from shared.errors import RateLimited
from shared.logging import get_logger

T = TypeVar("T")


class RateWindow(str, Enum):
    """How the budget window moves."""
    FIXED = "fixed"      # whole budget resets when the window elapses
    SLIDING = "sliding"  # a slot frees up window_length after it was used


@dataclass
class RateBudget:
    """Calls allowed per window for one upstream service."""

    capacity: int
    window_length: float
    window_start: float = 0.0
    used: int = 0
    policy: RateWindow = RateWindow.SLIDING
    _stamps: Deque[float] = field(default_factory=deque, repr=False)

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_length

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.used)

    def refresh(self, now: float) -> None:
        """Roll the window forward to ``now``."""
        if self.policy is RateWindow.FIXED:
            if now >= self.window_start + self.window_length:
                self.window_start = now
                self.used = 0
            return

        cutoff = now - self.window_length
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()
        self.used = len(self._stamps)
        self.window_start = self._stamps[0] if self._stamps else now

    def try_consume(self, now: float) -> float:
        """Take one unit of budget.

        Returns 0.0 when the unit was taken, otherwise the number of seconds
        until the window frees a slot. Refresh and check are one step.
        """
        self.refresh(now)
        if self.used < self.capacity:
            self.used += 1
            if self.policy is RateWindow.SLIDING:
                self._stamps.append(now)
            return 0.0
        return max(0.0, self.reset_at - now)

    def refund(self) -> None:
        """Give back the most recently taken unit."""
        if self.used <= 0:
            return
        self.used -= 1
        if self.policy is RateWindow.SLIDING and self._stamps:
            self._stamps.pop()


@dataclass
class QueuedCall:
    """A call waiting for its turn."""

    submitted_at: float
    operation: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"


@dataclass(frozen=True)
class RateLimitStatus:
    """Budget snapshot for UI badges."""

    service: str
    remaining: int
    reset_at: float
    limit: int
    queued: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "limit": self.limit,
            "queued": self.queued,
        }


class RequestScheduler:
    """Throttles and serializes dispatch of upstream calls for one service.

    Calls run in submission order. A single dispatch loop takes one unit of
    budget per call, sleeping until the window frees a slot when the budget
    is spent. Each dispatched call runs in its own task and reports back
    through its own future, so one failing or slow call never blocks or
    fails its siblings.
    """

    def __init__(self,
                 service: str,
                 capacity: int,
                 window_seconds: float,
                 inter_call_delay: float = 0.1,
                 policy: RateWindow = RateWindow.SLIDING,
                 max_queue_size: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 on_budget_change: Optional[Callable[[str, int], None]] = None):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.service = service
        self.inter_call_delay = inter_call_delay
        self.max_queue_size = max_queue_size
        self.logger = get_logger(f"telemetry.scheduler.{service}")

        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._on_budget_change = on_budget_change

        self._budget = RateBudget(
            capacity=capacity,
            window_length=window_seconds,
            window_start=clock(),
            policy=policy,
        )
        self._queue: Deque[QueuedCall] = deque()
        self._lock = asyncio.Lock()
        self._worker: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._dispatched_total = 0

    @property
    def capacity(self) -> int:
        return self._budget.capacity

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def dispatched_total(self) -> int:
        return self._dispatched_total

    async def enqueue(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Queue ``operation`` and wait for its own result or error."""
        if self.max_queue_size is not None and len(self._queue) >= self.max_queue_size:
            status = self.status()
            raise RateLimited(
                f"Request queue for '{self.service}' is full",
                service=self.service,
                retry_after=max(0.0, status.reset_at - self._wall_clock()),
                details={"queued": len(self._queue)}
            )

        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueuedCall(self._clock(), operation, future))
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        """Single dispatch loop; exits when the queue is empty."""
        while self._queue:
            # The head stays queued until it holds a slot.
            call = self._queue[0]
            if call.future.done():
                # Caller went away before dispatch.
                self._queue.popleft()
                continue

            await self._acquire_slot()
            self._queue.popleft()

            if call.future.done():
                async with self._lock:
                    self._budget.refund()
                continue

            self._dispatch(call)

            if self.inter_call_delay > 0:
                await self._sleep(self.inter_call_delay)

    async def _acquire_slot(self) -> None:
        while True:
            async with self._lock:
                wait = self._budget.try_consume(self._clock())
                remaining = self._budget.remaining

            if wait <= 0:
                self._notify_budget(remaining)
                return

            self.logger.warning(
                "Rate budget exhausted, waiting for window",
                service=self.service,
                wait_seconds=round(wait, 3),
                queued=len(self._queue)
            )
            await self._sleep(wait)

    def _dispatch(self, call: QueuedCall) -> None:
        self._dispatched_total += 1
        task = asyncio.create_task(self._run(call))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run(self, call: QueuedCall) -> None:
        try:
            result = await call.operation()
        except asyncio.CancelledError:
            if not call.future.done():
                call.future.cancel()
            raise
        except Exception as e:
            if not call.future.done():
                call.future.set_exception(e)
        else:
            if not call.future.done():
                call.future.set_result(result)

    def _notify_budget(self, remaining: int) -> None:
        if self._on_budget_change is not None:
            self._on_budget_change(self.service, remaining)

    def status(self) -> RateLimitStatus:
        """Remaining budget, wall-clock reset time and limit."""
        now = self._clock()
        self._budget.refresh(now)
        reset_at = self._wall_clock() + max(0.0, self._budget.reset_at - now)
        return RateLimitStatus(
            service=self.service,
            remaining=self._budget.remaining,
            reset_at=reset_at,
            limit=self._budget.capacity,
            queued=len(self._queue),
        )

    async def aclose(self) -> None:
        """Stop the dispatch loop and fail anything still queued."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        while self._queue:
            call = self._queue.popleft()
            if not call.future.done():
                call.future.cancel()
        in_flight = list(self._in_flight)
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
