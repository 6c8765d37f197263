"""
Spend and quota tracking for paid external services.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from leadminer.config.config import BudgetConfig
from leadminer.exceptions import BudgetExceededError
from leadminer.observability import gauge

logger = structlog.get_logger(__name__)

CRITICAL_FRACTION = 0.95


class BudgetGuard:
    """
    Tracks dollars spent and calls made per service.

    ``reserve`` is called before every paid call and raises
    ``BudgetExceededError`` instead of letting the call through once the
    dollar budget or the service's call quota would be exceeded.
    """

    def __init__(self, config: Optional[BudgetConfig] = None):
        self.config = config or BudgetConfig()
        self._costs: Dict[str, float] = {
            "classification": self.config.cost_per_classification,
            "search": self.config.cost_per_search,
            "embedding": self.config.cost_per_embedding,
        }
        self._quotas: Dict[str, Optional[int]] = {
            "classification": self.config.max_classification_calls,
            "search": self.config.max_search_queries,
        }
        self._calls: Dict[str, int] = {}
        self._spent = 0.0
        self._warned = False

    @property
    def spent(self) -> float:
        return self._spent

    @property
    def remaining(self) -> float:
        return max(0.0, self.config.budget_limit - self._spent)

    def cost_of(self, service: str) -> float:
        return self._costs.get(service, 0.0)

    def calls(self, service: str) -> int:
        return self._calls.get(service, 0)

    def can_afford(self, service: str) -> bool:
        quota = self._quotas.get(service)
        if quota is not None and self.calls(service) >= quota:
            return False
        return self._spent + self.cost_of(service) <= self.config.budget_limit + 1e-12

    def reserve(self, service: str) -> float:
        """Account for one call to ``service``. Returns the cost charged."""
        quota = self._quotas.get(service)
        if quota is not None and self.calls(service) >= quota:
            logger.warning("Call quota exhausted", service=service, calls=self.calls(service), quota=quota)
            raise BudgetExceededError(service, float(self.calls(service)), float(quota))

        cost = self.cost_of(service)
        if self._spent + cost > self.config.budget_limit + 1e-12:
            logger.warning("Budget exhausted", service=service, spent=self._spent, limit=self.config.budget_limit)
            raise BudgetExceededError(service, self._spent, self.config.budget_limit)

        self._spent += cost
        self._calls[service] = self.calls(service) + 1
        gauge("budget_spent_dollars", self._spent)

        if not self._warned and self.config.budget_limit > 0:
            if self._spent >= self.config.budget_limit * self.config.warning_fraction:
                self._warned = True
                logger.warning(
                    "Budget warning threshold crossed",
                    spent=round(self._spent, 4),
                    limit=self.config.budget_limit,
                    percent_used=round(100 * self._spent / self.config.budget_limit, 1),
                )
        return cost

    def status(self) -> Dict[str, Any]:
        limit = self.config.budget_limit
        fraction = self._spent / limit if limit > 0 else 1.0
        if not self.can_afford("classification"):
            state = "exhausted"
        elif fraction >= CRITICAL_FRACTION:
            state = "critical"
        elif fraction >= self.config.warning_fraction:
            state = "warning"
        else:
            state = "ok"
        return {
            "status": state,
            "spent": round(self._spent, 6),
            "limit": limit,
            "remaining": round(self.remaining, 6),
            "percent_used": round(100 * fraction, 2),
            "calls": dict(self._calls),
        }
