"""
Token-bucket rate limiting for external dependencies.

Each dependency (classifier, embedder, verifier, search) gets its own bucket:
up to ``burst`` calls go through back-to-back, after which callers are paced
at ``rate`` calls per second.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

import structlog

from leadminer.config.config import RateLimitConfig, RateLimitsConfig
from leadminer.observability import histogram

logger = structlog.get_logger(__name__)


class TokenBucketLimiter:
    """Async token bucket. ``acquire`` suspends until a token is available."""

    def __init__(
        self,
        rate: float,
        burst: int,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate
        self.burst = burst
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self.total_acquired = 0
        self.total_wait_seconds = 0.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self) -> bool:
        """Take a token without waiting. Returns False when the bucket is empty."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            self.total_acquired += 1
            return True
        return False

    async def acquire(self) -> float:
        """Wait for and take one token. Returns the seconds spent waiting."""
        async with self._lock:
            waited = 0.0
            self._refill()
            while self._tokens < 1.0:
                delay = (1.0 - self._tokens) / self.rate
                await self._sleep(delay)
                waited += delay
                self._refill()
            self._tokens -= 1.0
            self.total_acquired += 1
            self.total_wait_seconds += waited

        histogram("rate_limit_wait_seconds", waited, {"dependency": self.name})
        if waited > 0:
            logger.debug("Rate limited", dependency=self.name, waited_seconds=round(waited, 3))
        return waited

    async def __aenter__(self) -> "TokenBucketLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    def get_stats(self) -> Dict[str, float]:
        return {
            "rate": self.rate,
            "burst": self.burst,
            "available_tokens": round(self.available_tokens, 3),
            "total_acquired": self.total_acquired,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
        }


class RateLimiterRegistry:
    """Named token buckets, one per external dependency."""

    def __init__(self, configs: Optional[Dict[str, RateLimitConfig]] = None):
        self._configs: Dict[str, RateLimitConfig] = dict(configs or {})
        self._limiters: Dict[str, TokenBucketLimiter] = {}

    @classmethod
    def from_config(cls, config: RateLimitsConfig) -> "RateLimiterRegistry":
        return cls(config.as_dict())

    def get(self, name: str) -> TokenBucketLimiter:
        if name not in self._limiters:
            cfg = self._configs.get(name, RateLimitConfig())
            self._limiters[name] = TokenBucketLimiter(rate=cfg.rate, burst=cfg.burst, name=name)
            logger.debug("Created rate limiter", dependency=name, rate=cfg.rate, burst=cfg.burst)
        return self._limiters[name]

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}
