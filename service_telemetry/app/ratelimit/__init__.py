"""
Rate limiting package for the Gateway.

Holds the FIFO request scheduler that keeps outbound calls to each
upstream service inside its published budget.
"""

from .scheduler import RateBudget, RateLimitStatus, RateWindow, RequestScheduler

__all__ = ["RateBudget", "RateLimitStatus", "RateWindow", "RequestScheduler"]
