"""
Gateway caching package.

Provides the in-process response cache used to avoid re-fetching
unchanged upstream data. Entries carry a TTL plus a stale window during
which they are still served while a background refresh runs.
"""

from .response_cache import CacheEntry, CacheLookup, CacheStatus, FetchResult, ResponseCache

__all__ = ["CacheEntry", "CacheLookup", "CacheStatus", "FetchResult", "ResponseCache"]
