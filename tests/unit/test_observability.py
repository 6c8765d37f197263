"""
Tests for metrics helpers, structured logging setup and HTTP retry predicates.
"""

import logging

import httpx
import pytest
import structlog
from prometheus_client import REGISTRY

from leadminer.config import MonitoringConfig
from leadminer.observability import METRICS, MetricsManager, bound_run_id, configure_logging, gauge, histogram, increment
from leadminer.observability.metrics import Counter
from leadminer.utils.http import build_client, is_transient
from tests.helpers.metric_delta import metric_delta, sample_value


def histogram_count(name: str, labels=None) -> float:
    metric = METRICS[name]
    return REGISTRY.get_sample_value(f"{metric._name}_count", labels or {}) or 0.0


class TestMetricHelpers:
    """increment, gauge and histogram against the shared registry."""

    def test_increment_with_labels(self):
        with metric_delta("dedup_hits_total", 2, {"layer": "url"}):
            increment("dedup_hits_total", labels={"layer": "url"})
            increment("dedup_hits_total", labels={"layer": "url"})

    def test_increment_without_labels(self):
        before = sample_value("review_flags_total")

        increment("review_flags_total", 3)

        assert sample_value("review_flags_total") == before + 3

    def test_gauge_sets_value(self):
        gauge("budget_spent_dollars", 1.25)

        assert REGISTRY.get_sample_value("leadminer_budget_spent_dollars") == 1.25

    def test_histogram_observes(self):
        before = histogram_count("dedup_latency_seconds", {"layer": "total"})

        histogram("dedup_latency_seconds", 0.002, {"layer": "total"})

        assert histogram_count("dedup_latency_seconds", {"layer": "total"}) == before + 1

    def test_unknown_metric_is_ignored(self):
        increment("no_such_metric_total")
        gauge("no_such_gauge", 1.0)
        histogram("no_such_histogram", 1.0)

    def test_duplicate_registration_reuses_collector(self):
        again = Counter("leadminer_review_flags_total", "Candidates routed to human review")

        assert again is METRICS["review_flags_total"]

    def test_metrics_manager_skips_server_in_test_mode(self):
        manager = MetricsManager(MonitoringConfig(prometheus_port=9999))

        manager.start()

        assert manager._started is False


class TestLogging:
    """structlog configuration and run correlation."""

    @pytest.fixture
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            handler.close()
        root.handlers = handlers
        root.setLevel(level)

    def test_json_log_file_contains_run_id(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "leadminer.log"
        configure_logging(MonitoringConfig(log_file=str(log_file), log_level="info"))

        with bound_run_id("abc123") as run_id:
            structlog.get_logger("test").info("Batch processed", admitted=2)

        assert run_id == "abc123"
        content = log_file.read_text()
        assert '"run_id": "abc123"' in content
        assert "Batch processed" in content

    def test_run_id_is_generated_and_unbound(self):
        with bound_run_id() as run_id:
            assert len(run_id) == 12
            assert structlog.contextvars.get_contextvars()["run_id"] == run_id

        assert "run_id" not in structlog.contextvars.get_contextvars()


class TestTransientErrors:
    """Retry predicate shared by the HTTP adapters."""

    @staticmethod
    def status_error(code: int) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", "https://api.example.org")
        return httpx.HTTPStatusError("error", request=request, response=httpx.Response(code, request=request))

    @pytest.mark.parametrize("code", [408, 425, 429, 500, 502, 503, 504])
    def test_retryable_status(self, code):
        assert is_transient(self.status_error(code)) is True

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 422])
    def test_client_errors_are_final(self, code):
        assert is_transient(self.status_error(code)) is False

    def test_transport_errors_are_transient(self):
        assert is_transient(httpx.ConnectError("refused")) is True
        assert is_transient(httpx.ReadTimeout("slow")) is True

    def test_other_errors_are_final(self):
        assert is_transient(ValueError("bad json")) is False

    @pytest.mark.asyncio
    async def test_build_client_applies_headers(self):
        client = build_client(timeout=5.0, headers={"User-Agent": "LeadMiner/test"})
        try:
            assert client.headers["User-Agent"] == "LeadMiner/test"
            assert client.timeout.read == 5.0
        finally:
            await client.aclose()
