"""
Full pipeline runs: search, batch processing, ledger and run summaries.
"""

import json
from pathlib import Path

import pytest
import pytest_asyncio

from leadminer.classifier import Classifier
from leadminer.config.config import BudgetConfig
from leadminer.dedup import FingerprintStore, HashingEmbedder
from leadminer.exceptions import ConfigurationError, SearchError
from leadminer.limits import BudgetGuard
from leadminer.monitoring import ClassificationMonitor
from leadminer.pipeline import Pipeline
from leadminer.protocols import RelevanceJudgment
from leadminer.review import ReviewBucket
from leadminer.storage import JsonlLeadSink, LeadLedger
from tests.helpers.fakes import FakeSearchProvider, RecordingSink, ScriptedTextClassifier, event_candidates

RELEVANT = RelevanceJudgment(relevant=True, confidence=0.9, rationale="Nonprofit gala with travel lots")


@pytest_asyncio.fixture
async def ledger(test_config):
    ledger = LeadLedger(test_config.storage.ledger_path)
    yield ledger
    await ledger.close()


def build_pipeline(config, ledger, search, budget=None, sink=None, monitor=None):
    return Pipeline(
        store=_store(config),
        classifier=Classifier(ScriptedTextClassifier([RELEVANT]), config.classifier, budget=budget),
        config=config,
        ledger=ledger,
        review=ReviewBucket(RecordingSink(), config.classifier),
        output_sink=sink if sink is not None else RecordingSink(),
        monitor=monitor,
        search_provider=search,
        budget=budget,
    )


def _store(config):
    return FingerprintStore(HashingEmbedder(dim=config.dedup.embedding_dim), config.dedup)


class TestRun:
    """Search-driven runs."""

    @pytest.mark.asyncio
    async def test_run_writes_summary(self, test_config, ledger):
        search = FakeSearchProvider(
            {
                "school gala travel auction": event_candidates(2),
                "charity cruise raffle": SearchError("upstream 503"),
            }
        )
        sink = RecordingSink()
        monitor = ClassificationMonitor(test_config.monitor)
        pipeline = build_pipeline(test_config, ledger, search, sink=sink, monitor=monitor)

        summary = await pipeline.run(["school gala travel auction", "charity cruise raffle"], run_id="run-1")

        assert summary["run_id"] == "run-1"
        assert summary["queries_selected"] == 2
        assert summary["queries_issued"] == 1
        assert summary["search_errors"] == 1
        assert summary["candidates_found"] == 2
        assert summary["leads_admitted"] == 2
        assert summary["stop_reason"] == "queries exhausted"
        assert summary["summary_written"] is True
        assert len(sink.leads) == 2
        assert len(monitor.history) == 1

        written = json.loads((Path(test_config.storage.summary_dir) / "run_run-1.json").read_text())
        assert written["leads_admitted"] == 2
        assert written["stats"]["states"]["admitted"] == 2

    @pytest.mark.asyncio
    async def test_issued_queries_are_not_repeated(self, test_config, ledger):
        search = FakeSearchProvider({"school gala travel auction": event_candidates(1)})
        await build_pipeline(test_config, ledger, search).run(["school gala travel auction"])

        summary = await build_pipeline(test_config, ledger, search).run(
            ["School Gala  Travel Auction", "museum gala resort"]
        )

        assert summary["queries_selected"] == 1
        assert search.queries == ["school gala travel auction", "museum gala resort"]

    @pytest.mark.asyncio
    async def test_second_run_skips_ledgered_leads(self, test_config, ledger):
        candidates = event_candidates(2)
        first = FakeSearchProvider({"first query": candidates})
        second = FakeSearchProvider({"second query": candidates})
        await build_pipeline(test_config, ledger, first).run(["first query"])

        pipeline = build_pipeline(test_config, ledger, second)
        summary = await pipeline.run(["second query"])

        assert summary["leads_admitted"] == 0
        assert pipeline.get_stats()["states"]["skipped_ledger"] == 2

    @pytest.mark.asyncio
    async def test_stops_at_daily_lead_limit(self, test_config, ledger):
        test_config.search.max_leads_per_day = 1
        search = FakeSearchProvider(
            {"query one": event_candidates(3), "query two": event_candidates(2, prefix="https://other.example.org/p")}
        )

        summary = await build_pipeline(test_config, ledger, search).run(["query one", "query two"])

        assert summary["leads_admitted"] == 1
        assert summary["stop_reason"] == "daily lead limit reached"
        assert search.queries == ["query one"]

    @pytest.mark.asyncio
    async def test_query_cut_short_by_limit_is_resumed_next_run(self, test_config, ledger):
        test_config.search.max_leads_per_day = 1
        candidates = event_candidates(3)
        search = FakeSearchProvider({"query one": candidates})

        first = await build_pipeline(test_config, ledger, search).run(["query one"])

        assert first["leads_admitted"] == 1
        assert not await ledger.has_query("query one")

        test_config.search.max_leads_per_day = 10
        pipeline = build_pipeline(test_config, ledger, search)
        second = await pipeline.run(["query one"])

        assert second["leads_admitted"] == 2
        assert pipeline.get_stats()["states"]["skipped_ledger"] == 1
        assert all([await ledger.has_lead(c.url) for c in candidates])
        assert await ledger.has_query("query one")
        assert search.queries == ["query one", "query one"]

    @pytest.mark.asyncio
    async def test_stops_when_budget_exhausted(self, test_config, ledger):
        budget = BudgetGuard(BudgetConfig(max_classification_calls=0))
        search = FakeSearchProvider({"query one": event_candidates(1), "query two": event_candidates(1)})

        summary = await build_pipeline(test_config, ledger, search, budget=budget).run(["query one", "query two"])

        assert summary["stop_reason"] == "budget exhausted"
        assert summary["budget_exhausted"] is True
        assert summary["leads_admitted"] == 0
        assert search.queries == ["query one"]
        assert "budget" in summary["stats"]

    @pytest.mark.asyncio
    async def test_query_cap_from_budget(self, test_config, ledger):
        test_config.budget.max_search_queries = 1
        search = FakeSearchProvider({})

        summary = await build_pipeline(test_config, ledger, search).run(["a gala", "b gala", "c gala"])

        assert summary["queries_selected"] == 1
        assert search.queries == ["a gala"]

    @pytest.mark.asyncio
    async def test_run_without_search_provider_fails(self, test_config, ledger):
        pipeline = build_pipeline(test_config, ledger, search=None)

        with pytest.raises(ConfigurationError):
            await pipeline.run(["anything"])


class TestOutputs:
    """Persisted leads and ledger state after a run."""

    @pytest.mark.asyncio
    async def test_leads_reach_jsonl_and_ledger(self, test_config, ledger):
        candidates = event_candidates(2)
        sink = JsonlLeadSink(test_config.storage.leads_path)
        search = FakeSearchProvider({"school gala travel auction": candidates})

        await build_pipeline(test_config, ledger, search, sink=sink).run(["school gala travel auction"])

        rows = await sink.read_all()
        assert [r["url"] for r in rows] == [c.url for c in candidates]
        assert await ledger.has_lead(candidates[1].url)
        assert await ledger.has_query("school gala travel auction")

    @pytest.mark.asyncio
    async def test_store_warms_from_ledger_fingerprints(self, test_config, ledger):
        candidates = event_candidates(1)
        search = FakeSearchProvider({"school gala travel auction": candidates})
        await build_pipeline(test_config, ledger, search).run(["school gala travel auction"])

        store = _store(test_config)
        store.preload(await ledger.load_fingerprints())

        check = await store.is_duplicate(candidates[0])
        assert check.duplicate is True
        assert check.layer == "url"
