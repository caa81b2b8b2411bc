"""
Retry mechanism for resilient upstream calls.

Only transient failures are retried: transport errors, timeouts, 5xx and
429. Any other 4xx means the request itself is wrong and retrying it would
only burn rate budget.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from shared.errors import (
    GatewayTimeoutError,
    RateLimited,
    TransportError,
    UpstreamError,
)
from shared.logging import get_logger

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 backoff_multiplier: float = 2.0,
                 jitter: bool = False):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, base_delay={self.base_delay}, "
            f"max_delay={self.max_delay}, backoff_multiplier={self.backoff_multiplier})"
        )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Delay applied before retry number ``attempt`` (1-based)."""
    delay = config.base_delay * (config.backoff_multiplier ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)
        delay = min(delay, config.max_delay)

    return max(0.0, delay)


def delay_schedule(config: RetryConfig, count: int) -> List[float]:
    """First ``count`` backoff delays for ``config``."""
    return [compute_delay(attempt, config) for attempt in range(1, count + 1)]


def is_retryable(exc: BaseException) -> bool:
    """Whether a failure is transient enough to try again."""
    if isinstance(exc, RateLimited):
        return True
    if isinstance(exc, UpstreamError):
        return exc.is_server_error
    return isinstance(exc, (TransportError, GatewayTimeoutError))


class RetryPolicy:
    """Bounded exponential backoff around a single upstream operation."""

    def __init__(self,
                 config: Optional[RetryConfig] = None,
                 name: str = "default",
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or RetryConfig()
        self.name = name
        self._sleep = sleep
        self.logger = get_logger(f"retry.{name}")

    async def execute(self, operation: Callable[[], Awaitable[T]],
                      config: Optional[RetryConfig] = None) -> T:
        """Run ``operation``, retrying transient failures.

        The last error is re-raised unchanged once attempts are exhausted.
        """
        config = config or self.config

        for attempt in range(1, config.max_attempts + 1):
            try:
                result = await operation()
            except Exception as e:
                if not is_retryable(e):
                    self.logger.debug(
                        "Non-retryable failure",
                        attempt=attempt,
                        error_type=type(e).__name__,
                        error=str(e)
                    )
                    raise

                if attempt == config.max_attempts:
                    self.logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=config.max_attempts,
                        error_type=type(e).__name__,
                        error=str(e)
                    )
                    raise

                delay = compute_delay(attempt, config)
                self.logger.warning(
                    "Retry attempt failed, waiting before next attempt",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    delay=delay,
                    error=str(e)
                )
                await self._sleep(delay)
                continue

            if attempt > 1:
                self.logger.info("Retry succeeded", attempt=attempt)
            return result

        raise RuntimeError("unreachable")  # pragma: no cover


def retry_on_exception(config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on transient gateway errors."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        policy = RetryPolicy(config, name=func.__name__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await policy.execute(lambda: func(*args, **kwargs))

        return wrapper

    return decorator
