"""
Shared test configuration for LeadMiner.

Provides candidate factories and configuration pointed at temporary
directories. Fakes for external collaborators live in tests.helpers.fakes.
"""

import os
from pathlib import Path
from typing import Any, Callable

# Set test mode before leadminer modules read it.
os.environ["LEADMINER_TEST_MODE"] = "1"

import pytest

from leadminer.config import Config
from leadminer.dedup import HashingEmbedder
from leadminer.protocols import Candidate, RelevanceJudgment
from tests.helpers.fakes import NONPROFIT_TRAVEL_TEXT

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    os.environ["LEADMINER_TEST_MODE"] = "1"
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def make_candidate() -> Callable[..., Candidate]:
    """Factory for candidates with sensible nonprofit-event defaults."""

    counter = {"n": 0}

    def _make(**overrides: Any) -> Candidate:
        counter["n"] += 1
        fields = {
            "url": f"https://events.example.org/gala-{counter['n']}",
            "title": "Lincoln Elementary PTA - Spring Gala",
            "text": NONPROFIT_TRAVEL_TEXT,
            "event_date": "2025-05-10",
        }
        fields.update(overrides)
        return Candidate(**fields)

    return _make


@pytest.fixture
def relevant_judgment() -> RelevanceJudgment:
    return RelevanceJudgment(relevant=True, confidence=0.9, rationale="Nonprofit gala with a travel auction item")


@pytest.fixture
def hashing_embedder() -> HashingEmbedder:
    return HashingEmbedder(dim=256)


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Configuration with every file path inside a temporary directory."""
    return Config.model_validate(
        {
            "dedup": {"embedding_dim": 256},
            "storage": {
                "ledger_path": str(tmp_path / "ledger.db"),
                "leads_path": str(tmp_path / "leads.jsonl"),
                "review_path": str(tmp_path / "review.jsonl"),
                "summary_dir": str(tmp_path / "runs"),
            },
            "verification": {"enabled": False},
        }
    )
