"""
Defines and manages Prometheus metrics for the application.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from leadminer.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

_TEST_MODE = os.environ.get("LEADMINER_TEST_MODE", "0") == "1"


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]
        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "candidates_total": Counter(
            "leadminer_candidates_total",
            "Candidates processed by the pipeline, by final outcome",
            ["outcome"],
        ),
        "dedup_hits_total": Counter(
            "leadminer_dedup_hits_total",
            "Duplicate detections by the layer that matched",
            ["layer"],
        ),
        "dedup_latency_seconds": Histogram(
            "leadminer_dedup_latency_seconds",
            "Time spent in each deduplication layer",
            ["layer"],
            buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
        ),
        "classifications_total": Counter(
            "leadminer_classifications_total",
            "Classification results by business category",
            ["category"],
        ),
        "classification_failures_total": Counter(
            "leadminer_classification_failures_total",
            "Classification calls that failed or timed out",
        ),
        "classification_latency_seconds": Histogram(
            "leadminer_classification_latency_seconds",
            "End-to-end time to classify one candidate",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        ),
        "review_flags_total": Counter(
            "leadminer_review_flags_total",
            "Candidates routed to human review",
        ),
        "monitor_alerts_total": Counter(
            "leadminer_monitor_alerts_total",
            "Alerts raised by the classification monitor",
            ["type", "severity"],
        ),
        "cache_hits_total": Counter(
            "leadminer_cache_hits_total",
            "TTL cache hits",
            ["cache"],
        ),
        "cache_misses_total": Counter(
            "leadminer_cache_misses_total",
            "TTL cache misses",
            ["cache"],
        ),
        "budget_spent_dollars": Gauge(
            "leadminer_budget_spent_dollars",
            "Dollars spent on paid external services in this process",
        ),
        "rate_limit_wait_seconds": Histogram(
            "leadminer_rate_limit_wait_seconds",
            "Time spent waiting for a rate-limit token",
            ["dependency"],
            buckets=[0.0, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of metrics exporting."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> None:
        """Starts the Prometheus exporter when a port is configured."""
        if self._started or _TEST_MODE:
            return
        if self.config.prometheus_port:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
            self._started = True
