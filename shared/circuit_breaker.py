"""
Circuit breaker pattern implementation for resilient upstream calls.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from shared.errors import CircuitOpenError, GatewayTimeoutError, RateLimited, TransportError, UpstreamError
from shared.logging import get_logger

T = TypeVar("T")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Single probe in flight


def counts_as_failure(exc: BaseException) -> bool:
    """Whether an error says something about upstream health.

    Client errors (4xx other than 429) mean the request was wrong, not that
    the provider is degraded, so they never trip the breaker.
    """
    if isinstance(exc, UpstreamError):
        return exc.is_server_error or isinstance(exc, RateLimited)
    return isinstance(exc, (TransportError, GatewayTimeoutError))


class CircuitBreaker:
    """Circuit breaker guarding one downstream service."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 name: str = "default",
                 clock: Callable[[], float] = time.monotonic,
                 on_state_change: Optional[Callable[[str, CircuitBreakerState], None]] = None):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._rejected_count = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _set_state(self, state: CircuitBreakerState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        self.logger.info(
            "Circuit breaker state change",
            breaker=self.name,
            previous=previous.value,
            state=state.value
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, state)

    async def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True when it is the probe."""
        async with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return False

            if self._state == CircuitBreakerState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed >= self.recovery_timeout:
                    self._set_state(CircuitBreakerState.HALF_OPEN)
                    self._probe_in_flight = True
                    return True
                retry_in = max(0.0, self.recovery_timeout - elapsed)
            else:
                retry_in = 0.0

            self._rejected_count += 1
            raise CircuitOpenError(
                f"Circuit breaker '{self.name}' is {self._state.value.upper()} - blocking call",
                service=self.name,
                details={"state": self._state.value, "retry_in_seconds": round(retry_in, 3)}
            )

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute function with circuit breaker protection."""
        is_probe = await self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if counts_as_failure(e):
                await self._record_failure(is_probe)
            elif is_probe:
                # Provider answered; it is reachable again.
                await self._record_success(is_probe)
            raise
        except BaseException:
            # Probe cancelled before an outcome; fall back to OPEN.
            if is_probe:
                await self._abandon_probe()
            raise

        await self._record_success(is_probe)
        return result

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """Alias of :meth:`call` for zero-argument operations."""
        return await self.call(func)

    async def _record_success(self, is_probe: bool) -> None:
        async with self._lock:
            if is_probe:
                self._probe_in_flight = False
                self._failure_count = 0
                self._set_state(CircuitBreakerState.CLOSED)
                self.logger.info("Circuit breaker reset to CLOSED after successful probe")
            elif self._state == CircuitBreakerState.CLOSED:
                self._failure_count = 0

    async def _record_failure(self, is_probe: bool) -> None:
        async with self._lock:
            self._failure_count += 1

            if is_probe:
                self._probe_in_flight = False
                self._opened_at = self._clock()
                self._set_state(CircuitBreakerState.OPEN)
                self.logger.warning("Circuit breaker probe failed, reopening", breaker=self.name)
                return

            if self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
                self._opened_at = self._clock()
                self._set_state(CircuitBreakerState.OPEN)
                self.logger.warning(
                    "Circuit breaker opened due to failures",
                    breaker=self.name,
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold
                )

    async def _abandon_probe(self) -> None:
        async with self._lock:
            self._probe_in_flight = False
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._set_state(CircuitBreakerState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._failure_count = 0
        self._probe_in_flight = False
        self._opened_at = 0.0
        self._set_state(CircuitBreakerState.CLOSED)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "rejected_count": self._rejected_count,
            "opened_at": self._opened_at,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN


class CircuitBreakerManager:
    """Registry of named circuit breakers, one per downstream service."""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 on_state_change: Optional[Callable[[str, CircuitBreakerState], None]] = None):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_manager")
        self._clock = clock
        self._on_state_change = on_state_change

    def get_circuit_breaker(self,
                            name: str,
                            failure_threshold: int = 5,
                            recovery_timeout: float = 60.0) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                name=name,
                clock=self._clock,
                on_state_change=self._on_state_change
            )
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }
