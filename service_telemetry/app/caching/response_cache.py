"""
In-process response cache with stale-while-revalidate and request coalescing.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from shared.logging import get_logger

T = TypeVar("T")


class CacheStatus(str, Enum):
    """Outcome of a cache read."""
    FRESH = "fresh"
    STALE = "stale"
    MISS = "miss"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value. Never mutated; replaced on write."""

    value: T
    stored_at: float
    ttl: float
    stale_window: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    @property
    def stale_until(self) -> float:
        return self.stored_at + self.ttl + self.stale_window

    def status_at(self, now: float) -> CacheStatus:
        if now < self.expires_at:
            return CacheStatus.FRESH
        if now < self.stale_until:
            return CacheStatus.STALE
        return CacheStatus.MISS


@dataclass(frozen=True)
class CacheLookup(Generic[T]):
    """Result of :meth:`ResponseCache.get`."""

    status: CacheStatus
    value: Optional[T] = None

    @property
    def hit(self) -> bool:
        return self.status is not CacheStatus.MISS


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """A value handed to callers plus where it came from.

    ``stale`` is the "using cached data" flag: the value is past its TTL,
    either because a background refresh is still running or because the
    refresh failed.
    """

    value: T
    cached: bool = False
    stale: bool = False

    @property
    def cache_status(self) -> CacheStatus:
        if self.stale:
            return CacheStatus.STALE
        if self.cached:
            return CacheStatus.FRESH
        return CacheStatus.MISS

    def to_dict(self, value: Any = None) -> Dict[str, Any]:
        return {
            "data": self.value if value is None else value,
            "cached": self.cached,
            "stale": self.stale,
        }


class ResponseCache:
    """Key -> (value, stored_at, ttl, stale_window) store.

    Reads return fresh, stale or miss. Fetches through :meth:`get_or_fetch`
    keep at most one in-flight refresh per key; concurrent callers for the
    same key share it instead of each hitting the upstream.
    """

    def __init__(self,
                 max_entries: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.logger = get_logger("telemetry.cache")
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._refreshes: Dict[str, asyncio.Task] = {}
        self._stats = {"fresh": 0, "stale": 0, "miss": 0, "refresh_failures": 0, "evictions": 0}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> CacheLookup[Any]:
        """Read ``key`` without touching the network."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats["miss"] += 1
            return CacheLookup(CacheStatus.MISS)

        status = entry.status_at(self._clock())
        if status is CacheStatus.MISS:
            # Past the stale window: the entry's lifetime is over.
            del self._entries[key]
            self._stats["miss"] += 1
            return CacheLookup(CacheStatus.MISS)

        self._stats[status.value] += 1
        return CacheLookup(status, entry.value)

    def set(self, key: str, value: Any, ttl: float, stale_window: float = 0.0) -> CacheEntry[Any]:
        """Store ``value`` under ``key``, replacing any previous entry."""
        if ttl < 0 or stale_window < 0:
            raise ValueError("ttl and stale_window must be non-negative")

        entry = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl, stale_window=stale_window)
        self._entries.pop(key, None)
        self._entries[key] = entry

        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                self.logger.debug("Evicted cache entry", key=evicted)

        return entry

    def invalidate(self, key: str) -> bool:
        """Explicitly evict ``key``."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def is_refreshing(self, key: str) -> bool:
        task = self._refreshes.get(key)
        return task is not None and not task.done()

    async def get_or_fetch(self,
                           key: str,
                           fetcher: Callable[[], Awaitable[T]],
                           ttl: float,
                           stale_window: float = 0.0) -> FetchResult[T]:
        """Serve ``key`` from cache, refreshing through ``fetcher`` as needed.

        Fresh entries return with no network activity. Stale entries return
        at once and trigger a background refresh; a failed refresh leaves
        the stale entry in place. A miss waits on the (shared) fetch and
        propagates its error when nothing is cached.
        """
        lookup = self.get(key)

        if lookup.status is CacheStatus.FRESH:
            return FetchResult(lookup.value, cached=True)

        if lookup.status is CacheStatus.STALE:
            self._start_refresh(key, fetcher, ttl, stale_window)
            return FetchResult(lookup.value, cached=True, stale=True)

        task = self._start_refresh(key, fetcher, ttl, stale_window)
        value = await asyncio.shield(task)
        return FetchResult(value)

    def _start_refresh(self, key: str, fetcher: Callable[[], Awaitable[T]],
                       ttl: float, stale_window: float) -> "asyncio.Task[T]":
        task = self._refreshes.get(key)
        if task is not None and not task.done():
            self.logger.debug("Joining in-flight fetch", key=key)
            return task

        task = asyncio.create_task(self._refresh(key, fetcher, ttl, stale_window))
        self._refreshes[key] = task
        task.add_done_callback(lambda t, k=key: self._refresh_done(k, t))
        return task

    async def _refresh(self, key: str, fetcher: Callable[[], Awaitable[T]],
                       ttl: float, stale_window: float) -> T:
        value = await fetcher()
        self.set(key, value, ttl, stale_window)
        return value

    def _refresh_done(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._refreshes.get(key) is task:
            del self._refreshes[key]

        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            self._stats["refresh_failures"] += 1
            self.logger.warning(
                "Cache refresh failed",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
                kept_stale=key in self._entries
            )

    def stats(self) -> Dict[str, int]:
        return {**self._stats, "entries": len(self._entries), "refreshing": len(self._refreshes)}

    async def aclose(self) -> None:
        """Cancel background refreshes."""
        tasks = list(self._refreshes.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
