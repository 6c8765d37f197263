"""
Exception hierarchy for LeadMiner.
"""
from __future__ import annotations

from typing import Optional


class LeadMinerError(Exception):
    """Base exception for all LeadMiner errors."""
    pass


class ConfigurationError(LeadMinerError):
    """Raised when configuration values are invalid. Always fatal at startup."""
    pass


class InvalidCandidateError(LeadMinerError):
    """Raised when a candidate is malformed or missing required fields."""

    def __init__(self, reason: str, url: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.url = url


class ClassificationError(LeadMinerError):
    """Raised when the external text-classification call fails."""
    pass


class EmbeddingError(LeadMinerError):
    """Raised when the embedding call fails."""
    pass


class VerificationError(LeadMinerError):
    """Raised when the registry lookup fails."""
    pass


class SearchError(LeadMinerError):
    """Raised when the upstream search call fails."""
    pass


class BudgetExceededError(LeadMinerError):
    """Raised when the spend budget or a call quota is exhausted."""

    def __init__(self, service: str, spent: float, limit: float):
        super().__init__(f"Budget exhausted for {service}: spent {spent:.4f} of {limit:.4f}")
        self.service = service
        self.spent = spent
        self.limit = limit
