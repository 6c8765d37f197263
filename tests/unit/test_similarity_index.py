"""Tests for the cosine similarity index."""

import numpy as np
import pytest

from leadminer.dedup import HashingEmbedder, SimilarityIndex


class TestFlatIndex:
    """Exact numpy-backed index."""

    def test_best_match_is_highest_cosine(self):
        index = SimilarityIndex(dim=3)
        index.add("a", np.array([1.0, 0.0, 0.0]))
        index.add("b", np.array([0.0, 1.0, 0.0]))
        record_id, score = index.best_match(np.array([0.1, 0.9, 0.0]))
        assert record_id == "b"
        assert 0.99 < score <= 1.0

    def test_ties_resolve_to_earliest_added(self):
        index = SimilarityIndex(dim=2)
        index.add("first", np.array([1.0, 0.0]))
        index.add("second", np.array([2.0, 0.0]))
        assert index.best_match(np.array([1.0, 0.0]))[0] == "first"

    def test_zero_vectors_never_stored_or_matched(self):
        index = SimilarityIndex(dim=2)
        assert index.add("zero", np.zeros(2)) is False
        assert len(index) == 0
        index.add("a", np.array([1.0, 0.0]))
        assert index.search(np.zeros(2)) == []

    def test_search_orders_results(self):
        index = SimilarityIndex(dim=2)
        index.add("x", np.array([1.0, 0.0]))
        index.add("y", np.array([1.0, 1.0]))
        index.add("z", np.array([0.0, 1.0]))
        hits = index.search(np.array([0.0, 1.0]), k=2)
        assert [h[0] for h in hits] == ["z", "y"]

    def test_dimension_mismatch(self):
        index = SimilarityIndex(dim=3)
        with pytest.raises(ValueError):
            index.add("a", np.ones(4))

    def test_clear(self):
        index = SimilarityIndex(dim=2)
        index.add("a", np.array([1.0, 0.0]))
        index.clear()
        assert len(index) == 0
        assert index.best_match(np.array([1.0, 0.0])) is None

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            SimilarityIndex(dim=2, backend="annoy")


class TestHashingEmbedder:
    """Deterministic offline embeddings."""

    def test_deterministic_and_unit_length(self):
        embedder = HashingEmbedder(dim=128)
        a = embedder.embed_sync("Silent auction with a Hawaii vacation")
        b = embedder.embed_sync("Silent auction with a Hawaii vacation")
        assert np.array_equal(a, b)
        assert np.isclose(np.linalg.norm(a), 1.0)

    def test_near_copies_are_close(self):
        embedder = HashingEmbedder(dim=512)
        base = "Lincoln Elementary PTA spring gala silent auction with a Maui travel package and dinner"
        a = embedder.embed_sync(base)
        b = embedder.embed_sync(base + " tickets")
        c = embedder.embed_sync("Quarterly shareholder meeting agenda for a logistics corporation")
        assert float(a @ b) > 0.85
        assert float(a @ c) < 0.5

    def test_empty_text_is_zero_vector(self):
        assert not HashingEmbedder(dim=16).embed_sync("").any()

    @pytest.mark.asyncio
    async def test_async_embed_matches_sync(self):
        embedder = HashingEmbedder(dim=64)
        assert np.array_equal(await embedder.embed("gala"), embedder.embed_sync("gala"))
