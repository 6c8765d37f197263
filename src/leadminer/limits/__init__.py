"""Rate limiting and spend control for external calls."""

from .budget import BudgetGuard
from .rate_limiter import RateLimiterRegistry, TokenBucketLimiter

__all__ = ["BudgetGuard", "RateLimiterRegistry", "TokenBucketLimiter"]
