"""
Fingerprint store: the admission-side duplicate detector.

Checks run as a hard short-circuit over four layers, cheapest first:

1. Normalized URL
2. Registry ID (EIN)
3. Normalized organization name
4. Semantic similarity of the composed embedding text

The first three are exact-key lookups and always win over the semantic
layer. A failing embedder disables layer 4 for that check only.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from leadminer.config.config import DedupConfig
from leadminer.exceptions import EmbeddingError
from leadminer.observability import histogram, increment
from leadminer.protocols import (
    Candidate,
    DuplicateCheck,
    DuplicateCluster,
    EmbedderProtocol,
    FingerprintRecord,
)

from .normalize import (
    compose_embedding_text,
    content_signature,
    normalize_org_name,
    normalize_registry_id,
    normalize_url,
)
from .similarity_index import SimilarityIndex

logger = structlog.get_logger(__name__)

LAYERS = ("url", "registry_id", "org_name", "semantic")


class FingerprintStore:
    """
    Process-scoped store of admitted candidates' identity keys and vectors.

    ``check_and_add`` is the only admission primitive the pipeline uses: it
    holds a single lock across the check and the insert so two near-identical
    candidates classified in parallel cannot both be admitted.
    """

    def __init__(
        self,
        embedder: EmbedderProtocol,
        config: Optional[DedupConfig] = None,
        index: Optional[SimilarityIndex] = None,
    ):
        self.config = config or DedupConfig()
        self.embedder = embedder
        self.index = index or SimilarityIndex(dim=embedder.dim, backend=self.config.index_backend)

        self._records: Dict[str, FingerprintRecord] = {}
        self._by_url: Dict[str, str] = {}
        self._by_registry_id: Dict[str, str] = {}
        self._by_org_name: Dict[str, str] = {}
        self._by_signature: Dict[str, str] = {}
        self._lock = asyncio.Lock()

        self._total_checks = 0
        self._layer_hits: Dict[str, int] = {layer: 0 for layer in LAYERS}
        self._embedding_failures = 0
        self._start_time = time.time()

        logger.info(
            "Initialized FingerprintStore",
            semantic_threshold=self.config.semantic_threshold,
            backend=self.index.backend,
            dim=self.index.dim,
        )

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    async def is_duplicate(self, candidate: Candidate) -> DuplicateCheck:
        """Read-only duplicate check against everything admitted so far."""
        check, _ = await self._check(candidate)
        return check

    async def _check(
        self, candidate: Candidate, vector: Optional[np.ndarray] = None
    ) -> Tuple[DuplicateCheck, Optional[np.ndarray]]:
        start_time = time.perf_counter()
        self._total_checks += 1

        exact_layers = (
            ("url", self._by_url, normalize_url(candidate.url, self.config.tracking_params)),
            ("registry_id", self._by_registry_id, normalize_registry_id(candidate.registry_id)),
            ("org_name", self._by_org_name, normalize_org_name(candidate.org_name)),
        )
        for layer, keys, key in exact_layers:
            if key and key in keys:
                record = self._records[keys[key]]
                self._record_hit(layer, start_time)
                logger.debug("Exact duplicate detected", layer=layer, url=candidate.url, matched=record.record_id)
                return (
                    DuplicateCheck(
                        duplicate=True,
                        reason=f"{layer} match",
                        layer=layer,
                        matched_record=record,
                        similarity=1.0,
                    ),
                    None,
                )

        text = compose_embedding_text(candidate, self.config.excerpt_chars)
        signature = content_signature(text)
        if signature in self._by_signature:
            record = self._records[self._by_signature[signature]]
            self._record_hit("semantic", start_time)
            return (
                DuplicateCheck(
                    duplicate=True,
                    reason="identical content",
                    layer="semantic",
                    matched_record=record,
                    similarity=1.0,
                ),
                record.vector,
            )

        if vector is None:
            vector = await self._embed(text, candidate)
        if vector is None or len(self.index) == 0:
            histogram("dedup_latency_seconds", time.perf_counter() - start_time, {"layer": "total"})
            return DuplicateCheck.unique(vector=vector), vector

        match = self.index.best_match(vector)
        histogram("dedup_latency_seconds", time.perf_counter() - start_time, {"layer": "total"})
        if match is None:
            return DuplicateCheck.unique(vector=vector), vector

        record_id, score = match
        if score >= self.config.semantic_threshold:
            self._record_hit("semantic", start_time)
            logger.debug("Semantic duplicate detected", url=candidate.url, matched=record_id, similarity=round(score, 4))
            return (
                DuplicateCheck(
                    duplicate=True,
                    reason=f"semantic similarity {score:.3f}",
                    layer="semantic",
                    matched_record=self._records[record_id],
                    similarity=score,
                ),
                vector,
            )
        return DuplicateCheck.unique(similarity=score, vector=vector), vector

    async def _embed(self, text: str, candidate: Candidate) -> Optional[np.ndarray]:
        if not text:
            return None
        try:
            return await self.embedder.embed(text)
        except (EmbeddingError, asyncio.TimeoutError, ValueError) as e:
            self._embedding_failures += 1
            logger.warning("Embedding failed, semantic layer skipped", url=candidate.url, error=str(e))
            return None

    def _record_hit(self, layer: str, start_time: float) -> None:
        self._layer_hits[layer] += 1
        increment("dedup_hits_total", labels={"layer": layer})
        histogram("dedup_latency_seconds", time.perf_counter() - start_time, {"layer": layer})

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def add_to_cache(self, candidate: Candidate, vector: Optional[np.ndarray] = None) -> FingerprintRecord:
        """Record an admitted candidate's keys, signature and vector."""
        text = compose_embedding_text(candidate, self.config.excerpt_chars)
        if vector is None:
            vector = await self._embed(text, candidate)
        record = FingerprintRecord(
            record_id=candidate.id,
            normalized_url=normalize_url(candidate.url, self.config.tracking_params),
            registry_id=normalize_registry_id(candidate.registry_id),
            normalized_org_name=normalize_org_name(candidate.org_name),
            content_signature=content_signature(text),
            vector=vector,
            emails=set(candidate.emails),
            phones=set(candidate.phones),
            source_urls=[candidate.url],
        )
        self._index_record(record)
        return record

    def _index_record(self, record: FingerprintRecord) -> None:
        self._records[record.record_id] = record
        # Earliest admission owns each key.
        if record.normalized_url:
            self._by_url.setdefault(record.normalized_url, record.record_id)
        if record.registry_id:
            self._by_registry_id.setdefault(record.registry_id, record.record_id)
        if record.normalized_org_name:
            self._by_org_name.setdefault(record.normalized_org_name, record.record_id)
        if record.content_signature:
            self._by_signature.setdefault(record.content_signature, record.record_id)
        if record.vector is not None:
            self.index.add(record.record_id, record.vector)

    async def check_and_add(
        self, candidate: Candidate, vector: Optional[np.ndarray] = None
    ) -> Tuple[DuplicateCheck, Optional[FingerprintRecord]]:
        """
        Atomically check a candidate and admit it when unique.

        ``vector`` is an embedding already computed for this candidate, usually
        by an earlier ``is_duplicate`` call; when given the embedder is not called.
        """
        async with self._lock:
            check, vector = await self._check(candidate, vector=vector)
            if check.duplicate:
                return check, None
            record = await self.add_to_cache(candidate, vector=vector)
            return check, record

    def preload(self, records: Iterable[FingerprintRecord]) -> int:
        """Warm the store from persisted records. Returns the number loaded."""
        loaded = 0
        for record in records:
            if record.record_id in self._records:
                continue
            self._index_record(record)
            loaded += 1
        logger.info("Preloaded fingerprints", count=loaded)
        return loaded

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def deduplicate_batch(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        """Admit candidates in input order, dropping any that duplicate earlier ones."""
        unique: List[Candidate] = []
        for candidate in candidates:
            check, _ = await self.check_and_add(candidate)
            if check.duplicate:
                logger.debug("Dropped duplicate in batch", url=candidate.url, layer=check.layer)
                continue
            unique.append(candidate)
        logger.info("Batch deduplicated", received=len(candidates), unique=len(unique))
        return unique

    async def find_duplicates(self, candidates: Sequence[Candidate]) -> List[DuplicateCluster]:
        """
        Group candidates into duplicate clusters without removing anything.

        Uses a scratch store so this store's contents are untouched. The
        representative of each cluster is its first-seen member. Only clusters
        with at least one duplicate are returned.
        """
        scratch = FingerprintStore(
            self.embedder,
            config=self.config,
            index=SimilarityIndex(dim=self.index.dim, backend="flat"),
        )
        clusters: Dict[str, DuplicateCluster] = {}
        order: List[str] = []
        for candidate in candidates:
            check, record = await scratch.check_and_add(candidate)
            if record is not None:
                clusters[record.record_id] = DuplicateCluster(representative=candidate)
                order.append(record.record_id)
                continue
            matched = check.matched_record
            if matched is None or matched.record_id not in clusters:
                continue
            cluster = clusters[matched.record_id]
            cluster.members.append(candidate)
            cluster.similarities.append(check.similarity if check.similarity is not None else 1.0)
        return [clusters[rid] for rid in order if clusters[rid].members]

    def merge_duplicates(self, clusters: Sequence[DuplicateCluster]) -> List[FingerprintRecord]:
        """
        Fold each cluster's contact details into its representative's record.

        When the representative is admitted in this store its record is
        updated in place; otherwise a detached record is returned.
        """
        merged: List[FingerprintRecord] = []
        for cluster in clusters:
            rep = cluster.representative
            record = self._records.get(rep.id)
            if record is None:
                key = normalize_url(rep.url, self.config.tracking_params)
                record_id = self._by_url.get(key)
                record = self._records.get(record_id) if record_id else None
            if record is None:
                text = compose_embedding_text(rep, self.config.excerpt_chars)
                record = FingerprintRecord(
                    record_id=rep.id,
                    normalized_url=normalize_url(rep.url, self.config.tracking_params),
                    registry_id=normalize_registry_id(rep.registry_id),
                    normalized_org_name=normalize_org_name(rep.org_name),
                    content_signature=content_signature(text),
                    emails=set(rep.emails),
                    phones=set(rep.phones),
                    source_urls=[rep.url],
                )
            for member in (rep, *cluster.members):
                record.emails.update(member.emails)
                record.phones.update(member.phones)
                if member.url not in record.source_urls:
                    record.source_urls.append(member.url)
            merged.append(record)
        return merged

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        total_hits = sum(self._layer_hits.values())
        checks = max(1, self._total_checks)
        return {
            "total_checks": self._total_checks,
            "duplicates": total_hits,
            "unique_records": len(self._records),
            "layer_hits": dict(self._layer_hits),
            "layer_hit_rates": {layer: hits / checks for layer, hits in self._layer_hits.items()},
            "duplicate_rate": total_hits / checks,
            "embedding_failures": self._embedding_failures,
            "indexed_vectors": len(self.index),
            "uptime_seconds": time.time() - self._start_time,
        }

    def clear(self) -> None:
        self._records.clear()
        self._by_url.clear()
        self._by_registry_id.clear()
        self._by_org_name.clear()
        self._by_signature.clear()
        self.index.clear()
        self._total_checks = 0
        self._layer_hits = {layer: 0 for layer in LAYERS}
        self._embedding_failures = 0
        logger.info("FingerprintStore cleared")
