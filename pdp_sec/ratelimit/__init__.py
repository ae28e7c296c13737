"""
Rate limiting for the PDP engine
Fixed-window limiter and its counter stores
"""

from .limiter import RateLimiter, RateLimitResult
from .storage import SQLRateLimitStore, InMemoryRateLimitStore

__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "SQLRateLimitStore",
    "InMemoryRateLimitStore",
]
