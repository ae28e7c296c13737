"""
Fixed-window rate limiting for API callers
Per-endpoint request ceilings keyed by (caller key, endpoint)
"""

import math
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import structlog
from pydantic import BaseModel

from ..config import RateLimitRule, SecurityConfig, get_security_config
from ..constants import Headers
from ..exceptions import RateLimitedError
from .storage import SQLRateLimitStore, InMemoryRateLimitStore

logger = structlog.get_logger(__name__)


class RateLimitResult(BaseModel):
    """Outcome of a rate limit check"""
    allowed: bool
    limit: int
    remaining: int
    reset_time_ms: int
    retry_after: Optional[int] = None

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.reset_time_ms / 1000, tz=timezone.utc)

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* response headers (reset in epoch seconds)"""
        headers = {
            Headers.RATE_LIMIT_LIMIT: str(self.limit),
            Headers.RATE_LIMIT_REMAINING: str(self.remaining),
            Headers.RATE_LIMIT_RESET: str(self.reset_time_ms // 1000),
        }
        if self.retry_after is not None:
            headers[Headers.RETRY_AFTER] = str(self.retry_after)
        return headers

    def to_error(self) -> RateLimitedError:
        return RateLimitedError(
            limit=self.limit,
            remaining=self.remaining,
            reset_time_ms=self.reset_time_ms,
            retry_after=self.retry_after or 1,
        )


class RateLimiter:
    """
    Fixed-window rate limiter.

    Windows are aligned to multiples of the rule's window size. The
    check-and-increment is delegated to the counter store, which performs
    it atomically. If the store fails the request is allowed and the
    failure is logged (fail open).
    """

    def __init__(
        self,
        store: Optional[SQLRateLimitStore] = None,
        config: Optional[SecurityConfig] = None,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or get_security_config()
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.rules = dict(rules) if rules is not None else dict(self.config.rate_limits)
        self.clock = clock

    def rule_for(self, endpoint: str) -> RateLimitRule:
        """Rule for an endpoint, falling back to the default entry"""
        rule = self.rules.get(endpoint) or self.rules.get("default")
        if rule is None:
            return self.config.rate_limit_rule(endpoint)
        return rule

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @staticmethod
    def _window(rule: RateLimitRule, now_ms: int) -> Tuple[int, int]:
        window_start = (now_ms // rule.window_ms) * rule.window_ms
        return window_start, window_start + rule.window_ms

    @staticmethod
    def _retry_after(reset_ms: int, now_ms: int) -> int:
        return max(1, math.ceil((reset_ms - now_ms) / 1000))

    def check(self, caller_key: str, endpoint: str) -> RateLimitResult:
        """
        Count one request against the current window

        Args:
            caller_key: API key of the caller
            endpoint: Endpoint identifier

        Returns:
            RateLimitResult; allowed=False when the window is full
        """
        rule = self.rule_for(endpoint)
        now_ms = self._now_ms()
        window_start, reset_ms = self._window(rule, now_ms)

        try:
            allowed, count = self.store.increment_if_below(
                caller_key, endpoint, window_start, rule.requests
            )
        except Exception as e:
            logger.error("Rate limit check failed, allowing request",
                         endpoint=endpoint, error=str(e))
            return RateLimitResult(
                allowed=True,
                limit=rule.requests,
                remaining=rule.requests,
                reset_time_ms=reset_ms,
            )

        if not allowed:
            retry_after = self._retry_after(reset_ms, now_ms)
            logger.warning("Rate limit exceeded",
                           endpoint=endpoint, limit=rule.requests, retry_after=retry_after)
            return RateLimitResult(
                allowed=False,
                limit=rule.requests,
                remaining=0,
                reset_time_ms=reset_ms,
                retry_after=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            limit=rule.requests,
            remaining=max(0, rule.requests - count),
            reset_time_ms=reset_ms,
        )

    def enforce(self, caller_key: str, endpoint: str) -> RateLimitResult:
        """Like check, but raises RateLimitedError when denied"""
        result = self.check(caller_key, endpoint)
        if not result.allowed:
            raise result.to_error()
        return result

    def status(self, caller_key: str, endpoint: str) -> RateLimitResult:
        """Current usage without counting a request"""
        rule = self.rule_for(endpoint)
        now_ms = self._now_ms()
        window_start, reset_ms = self._window(rule, now_ms)

        try:
            count = self.store.get_count(caller_key, endpoint, window_start)
        except Exception as e:
            logger.error("Failed to get rate limit status", endpoint=endpoint, error=str(e))
            return RateLimitResult(
                allowed=True,
                limit=rule.requests,
                remaining=rule.requests,
                reset_time_ms=reset_ms,
            )

        remaining = max(0, rule.requests - count)
        allowed = remaining > 0
        return RateLimitResult(
            allowed=allowed,
            limit=rule.requests,
            remaining=remaining,
            reset_time_ms=reset_ms,
            retry_after=None if allowed else self._retry_after(reset_ms, now_ms),
        )

    def cleanup(self, older_than_hours: Optional[float] = None) -> int:
        """Delete buckets whose window is older than the retention horizon"""
        hours = older_than_hours if older_than_hours is not None else self.config.rate_limit_retention_hours
        cutoff_ms = self._now_ms() - int(hours * 3600 * 1000)

        try:
            deleted = self.store.delete_older_than(cutoff_ms)
        except Exception as e:
            logger.error("Failed to clean up rate limit buckets", error=str(e))
            return 0

        logger.info("Cleaned up rate limit buckets", count=deleted, older_than_hours=hours)
        return deleted

    def reset(self, caller_key: str, endpoint: Optional[str] = None) -> int:
        """Administrative reset of a caller's buckets"""
        try:
            deleted = self.store.delete_for(caller_key, endpoint)
        except Exception as e:
            logger.error("Failed to reset rate limit", endpoint=endpoint, error=str(e))
            return 0

        logger.info("Reset rate limit", endpoint=endpoint, count=deleted)
        return deleted
