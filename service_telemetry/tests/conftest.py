"""
Shared fixtures for Telemetry Gateway tests.
"""

import asyncio

import pytest


class FakeClock:
    """Manually driven monotonic clock with a matching async sleep.

    ``sleep`` yields once before advancing, so tasks scheduled before the
    sleep observe the time at which they were scheduled.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    """Fake clock starting at t=0."""
    return FakeClock()


async def settle(rounds: int = 10) -> None:
    """Let pending tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
