"""Tests for the layered fingerprint store."""

import asyncio

import numpy as np
import pytest

from leadminer.config import DedupConfig
from leadminer.dedup import FingerprintStore
from leadminer.exceptions import EmbeddingError
from leadminer.protocols import Candidate, FingerprintRecord
from tests.helpers.fakes import StaticEmbedder

ALPHA = [1.0, 0.0, 0.0, 0.0]
BETA = [0.0, 1.0, 0.0, 0.0]
ALPHA_NEAR = [0.95, 0.31, 0.0, 0.0]


class FailingEmbedder:
    dim = 4

    def __init__(self):
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        raise EmbeddingError("embedding service unavailable")


@pytest.fixture
def embedder():
    return StaticEmbedder({"alpha": ALPHA, "beta": BETA, "near": ALPHA_NEAR})


@pytest.fixture
def store(embedder):
    return FingerprintStore(embedder, config=DedupConfig(embedding_dim=4, semantic_threshold=0.9))


class TestExactLayers:
    """URL, registry ID and organization name short-circuit the semantic layer."""

    @pytest.mark.asyncio
    async def test_same_url_with_orthogonal_content(self, store):
        first = Candidate(url="https://example.org/gala?utm_source=mail", title="alpha gala")
        second = Candidate(url="https://EXAMPLE.org/gala/", title="beta dinner")
        await store.check_and_add(first)

        check = await store.is_duplicate(second)

        assert check.duplicate is True
        assert check.layer == "url"
        assert check.similarity == 1.0
        assert check.matched_record.record_id == first.id

    @pytest.mark.asyncio
    async def test_registry_id_match(self, store):
        await store.check_and_add(Candidate(url="https://a.example.org", title="alpha", registry_id="12-3456789"))
        check = await store.is_duplicate(Candidate(url="https://b.example.org", title="beta", registry_id="123456789"))
        assert check.duplicate and check.layer == "registry_id"

    @pytest.mark.asyncio
    async def test_org_name_variants_match(self, store):
        await store.check_and_add(
            Candidate(url="https://a.example.org", title="alpha", org_name="Lincoln Elementary P.T.A.")
        )
        check = await store.is_duplicate(
            Candidate(url="https://b.example.org", title="beta", org_name="lincoln elementary pta")
        )
        assert check.duplicate is True
        assert check.layer == "org_name"
        assert check.similarity == 1.0

    @pytest.mark.asyncio
    async def test_url_checked_before_registry_id(self, store):
        await store.check_and_add(Candidate(url="https://a.example.org", title="alpha", registry_id="111111111"))
        check = await store.is_duplicate(Candidate(url="https://a.example.org", title="beta", registry_id="111111111"))
        assert check.layer == "url"


class TestSemanticLayer:
    """Cosine similarity against admitted vectors."""

    @pytest.mark.asyncio
    async def test_checked_vector_is_reused_at_admission(self, store, embedder):
        candidate = Candidate(url="https://a.example.org", title="alpha gala")

        check = await store.is_duplicate(candidate)
        _, record = await store.check_and_add(candidate, vector=check.vector)

        assert embedder.calls == 1
        assert record is not None
        np.testing.assert_array_equal(record.vector, np.asarray(ALPHA, dtype=np.float32))

    @pytest.mark.asyncio
    async def test_near_vector_is_duplicate(self, store):
        await store.check_and_add(Candidate(url="https://a.example.org", title="alpha gala"))
        check = await store.is_duplicate(Candidate(url="https://b.example.org", title="near gala"))
        assert check.duplicate is True
        assert check.layer == "semantic"
        assert check.similarity == pytest.approx(0.95 / np.linalg.norm(ALPHA_NEAR), abs=1e-4)

    @pytest.mark.asyncio
    async def test_orthogonal_vector_is_unique(self, store):
        await store.check_and_add(Candidate(url="https://a.example.org", title="alpha gala"))
        check = await store.is_duplicate(Candidate(url="https://b.example.org", title="beta gala"))
        assert check.duplicate is False
        assert check.similarity == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_identical_content_short_circuits_embedding(self, store, embedder):
        await store.check_and_add(Candidate(url="https://a.example.org", title="alpha gala"))
        calls_before = embedder.calls
        check = await store.is_duplicate(Candidate(url="https://b.example.org", title="alpha gala"))
        assert check.duplicate is True
        assert check.reason == "identical content"
        assert embedder.calls == calls_before

    @pytest.mark.asyncio
    async def test_embedding_failure_skips_semantic_layer(self):
        failing = FailingEmbedder()
        store = FingerprintStore(failing, config=DedupConfig(embedding_dim=4))
        first = Candidate(url="https://a.example.org", title="first", org_name="Harbor Arts")
        check, record = await store.check_and_add(first)
        assert check.duplicate is False
        assert record is not None and record.vector is None

        # Exact layers still work without vectors.
        dup = await store.is_duplicate(Candidate(url="https://b.example.org", title="second", org_name="Harbor Arts"))
        assert dup.duplicate and dup.layer == "org_name"

        unique = await store.is_duplicate(Candidate(url="https://c.example.org", title="third"))
        assert unique.duplicate is False
        assert store.get_stats()["embedding_failures"] >= 2


class TestAdmission:
    """Atomic check-and-add and batch helpers."""

    @pytest.mark.asyncio
    async def test_concurrent_near_duplicates_admit_one(self, store):
        a = Candidate(url="https://a.example.org", title="alpha gala")
        b = Candidate(url="https://b.example.org", title="near gala")
        results = await asyncio.gather(store.check_and_add(a), store.check_and_add(b))
        admitted = [record for _, record in results if record is not None]
        assert len(admitted) == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_deduplicate_batch_keeps_first(self, store):
        candidates = [
            Candidate(url="https://a.example.org", title="alpha gala"),
            Candidate(url="https://b.example.org", title="beta gala"),
            Candidate(url="https://c.example.org", title="near gala"),
            Candidate(url="https://A.example.org?utm_source=x", title="beta again"),
        ]
        unique = await store.deduplicate_batch(candidates)
        assert [c.url for c in unique] == ["https://a.example.org", "https://b.example.org"]
        assert store.get_stats()["duplicates"] == 2

    @pytest.mark.asyncio
    async def test_find_duplicates_leaves_store_untouched(self, store):
        rep = Candidate(url="https://a.example.org", title="alpha gala", emails=("a@example.org",))
        copy = Candidate(url="https://c.example.org", title="near gala", emails=("c@example.org",))
        other = Candidate(url="https://b.example.org", title="beta gala")

        clusters = await store.find_duplicates([rep, other, copy])

        assert len(clusters) == 1
        assert clusters[0].representative is rep
        assert clusters[0].members == [copy]
        assert clusters[0].size == 2
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_merge_duplicates_folds_contacts(self, store):
        rep = Candidate(url="https://a.example.org", title="alpha gala", emails=("a@example.org",))
        copy = Candidate(
            url="https://c.example.org", title="near gala", emails=("c@example.org",), phones=("555-010-0199",)
        )
        await store.check_and_add(rep)
        clusters = await store.find_duplicates([rep, copy])

        merged = store.merge_duplicates(clusters)

        assert len(merged) == 1
        record = merged[0]
        assert record.record_id == rep.id
        assert record.emails == {"a@example.org", "c@example.org"}
        assert record.phones == {"555-010-0199"}
        assert record.source_urls == ["https://a.example.org", "https://c.example.org"]

    @pytest.mark.asyncio
    async def test_preload_warms_exact_layers(self, store):
        record = FingerprintRecord(
            record_id="persisted-1",
            normalized_url="https://old.example.org/gala",
            registry_id="987654321",
            normalized_org_name="harbor arts",
            content_signature="0" * 64,
        )
        assert store.preload([record, record]) == 1
        check = await store.is_duplicate(Candidate(url="https://old.example.org/gala/", title="beta"))
        assert check.duplicate and check.layer == "url"

    def test_stats_shape(self, store):
        stats = store.get_stats()
        assert stats["total_checks"] == 0
        assert stats["duplicate_rate"] == 0.0
        assert set(stats["layer_hits"]) == {"url", "registry_id", "org_name", "semantic"}

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.check_and_add(Candidate(url="https://a.example.org", title="alpha"))
        store.clear()
        assert len(store) == 0
        check = await store.is_duplicate(Candidate(url="https://a.example.org", title="alpha"))
        assert check.duplicate is False
