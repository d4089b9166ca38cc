"""
Rate Limiter - per-identifier fixed-window request counter.

Counting is delegated to the `limits` library (the engine behind slowapi).
The window opens on the first request for an identifier and a rejected
request never extends it. Counters live in this process's MemoryStorage, so
several instances each enforce their own window; a shared `limits` storage
(Redis, Memcached) can be passed to FixedWindowLimiter without touching
callers.
"""

import math
import time
from dataclasses import dataclass
from typing import Protocol

from limits import RateLimitItem, RateLimitItemPerSecond, parse
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter
from structlog import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Window duration (whole seconds) and max requests per window."""

    name: str
    window_seconds: int
    max_requests: int

    def __post_init__(self) -> None:
        """Validate rule constraints."""
        if self.window_seconds < 1:
            raise ValueError(f"Window must be positive: {self.window_seconds}")
        if self.max_requests < 1:
            raise ValueError(f"Max requests must be at least 1: {self.max_requests}")

    @classmethod
    def from_string(cls, name: str, limit: str) -> "RateLimitRule":
        """Build a rule from rate-limit notation such as "10/minute"."""
        item = parse(limit)
        return cls(name=name, window_seconds=item.get_expiry(), max_requests=item.amount)

    @property
    def item(self) -> RateLimitItem:
        """The equivalent `limits` item, namespaced by rule name."""
        return RateLimitItemPerSecond(
            self.max_requests, self.window_seconds, namespace=self.name.upper()
        )


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate-limit check."""

    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds at which the window expires

    def retry_after_seconds(self, now: float) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, math.ceil(self.reset_at - now))


ADMIN_RULE = RateLimitRule.from_string("admin", "10/minute")
VERIFY_RULE = RateLimitRule.from_string("verify", "5/minute")
CREDIT_RULE = RateLimitRule.from_string("credit", "10/second")


class RateLimiter(Protocol):
    """Rate limiter protocol."""

    def check(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Count a request for identifier and report whether it is allowed."""
        ...


class FixedWindowLimiter:
    """
    Fixed-window limiter keyed by an arbitrary identifier.

    Usage:
        limiter = FixedWindowLimiter()
        result = limiter.check(f"admin:{client_ip}", ADMIN_RULE)
        if not result.allowed:
            retry_after = result.retry_after_seconds(limiter.now())
    """

    def __init__(self, storage: Storage | None = None) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)

    def now(self) -> float:
        """Clock the storage measures expiry against."""
        return time.time()

    def check(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Count a request for identifier and report whether it is allowed."""
        item = rule.item
        allowed = self._strategy.hit(item, identifier)
        reset_at, remaining = self._strategy.get_window_stats(item, identifier)

        if not allowed:
            logger.warning("rate_limit_exceeded", identifier=identifier, rule=rule.name)

        return RateLimitResult(allowed=allowed, remaining=remaining, reset_at=reset_at)

    def reset(self) -> None:
        """Forget every window."""
        self._storage.reset()


# Process-wide limiter shared by all routes
rate_limiter = FixedWindowLimiter()
