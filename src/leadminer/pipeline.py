"""
Pipeline orchestration for LeadMiner.

A candidate moves through: dedup pre-check, classification, registry
verification, review routing and admission. Admission re-checks every
candidate against leads admitted moments before, under the fingerprint
store's lock, so parallel classification can never admit two copies.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

import structlog

from leadminer.classifier import Classifier
from leadminer.config.config import Config
from leadminer.dedup import FingerprintStore
from leadminer.exceptions import BudgetExceededError, ConfigurationError, InvalidCandidateError, SearchError
from leadminer.limits import BudgetGuard
from leadminer.monitoring import ClassificationMonitor
from leadminer.observability import bound_run_id, increment
from leadminer.protocols import (
    BusinessCategory,
    Candidate,
    ClassificationResult,
    DuplicateCheck,
    ErrorInfo,
    ErrorSeverity,
    Lead,
    OutputSinkProtocol,
    ReviewItem,
    SearchProviderProtocol,
    VerificationResult,
    extract_org_name_from_title,
    utcnow,
)
from leadminer.review import ReviewBucket
from leadminer.search import QueryBuilder
from leadminer.storage.ledger import LeadLedger, query_key
from leadminer.utils import atomic_json_dump
from leadminer.verification import RegistryVerifier


class CandidateState(Enum):
    """Per-candidate lifecycle states."""

    RECEIVED = "received"
    DEDUP_CHECKED = "dedup_checked"
    REJECTED_DUPLICATE = "rejected_duplicate"
    CLASSIFIED = "classified"
    REJECTED_IRRELEVANT = "rejected_irrelevant"
    ADMITTED = "admitted"
    REJECTED_INVALID = "rejected_invalid"
    SKIPPED_LEDGER = "skipped_ledger"
    DEFERRED_BUDGET = "deferred_budget"


TERMINAL_STATES = frozenset(
    {
        CandidateState.REJECTED_DUPLICATE,
        CandidateState.REJECTED_IRRELEVANT,
        CandidateState.ADMITTED,
        CandidateState.REJECTED_INVALID,
        CandidateState.SKIPPED_LEDGER,
        CandidateState.DEFERRED_BUDGET,
    }
)


@dataclass
class ProcessingResult:
    """Everything the pipeline learned about one candidate."""

    candidate: Candidate
    state: CandidateState = CandidateState.RECEIVED
    transitions: List[CandidateState] = field(default_factory=lambda: [CandidateState.RECEIVED])
    duplicate_check: Optional[DuplicateCheck] = None
    classification: Optional[ClassificationResult] = None
    verification: Optional[VerificationResult] = None
    review_item: Optional[ReviewItem] = None
    lead: Optional[Lead] = None
    rejection_reason: Optional[str] = None
    error_info: Optional[ErrorInfo] = None

    def transition(self, state: CandidateState, reason: Optional[str] = None) -> None:
        self.state = state
        self.transitions.append(state)
        if reason is not None:
            self.rejection_reason = reason

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate.id,
            "url": self.candidate.url,
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "rejection_reason": self.rejection_reason,
            "confidence_score": self.classification.confidence_score if self.classification else None,
            "needs_review": self.classification.needs_review if self.classification else None,
        }


@dataclass
class BatchResult:
    results: List[ProcessingResult] = field(default_factory=list)
    budget_exhausted: bool = False
    processing_time: float = 0.0

    @property
    def leads(self) -> List[Lead]:
        return [r.lead for r in self.results if r.lead is not None]

    @property
    def review_items(self) -> List[ReviewItem]:
        return [r.review_item for r in self.results if r.review_item is not None]

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in CandidateState}
        for r in self.results:
            counts[r.state.value] += 1
        return counts


class Pipeline:
    """
    Coordinates dedup, classification, verification and admission.

    Collaborators are injected; ledger, verifier, review bucket, output sink,
    monitor and search provider are optional so the core can run without I/O.
    """

    def __init__(
        self,
        store: FingerprintStore,
        classifier: Classifier,
        config: Optional[Config] = None,
        ledger: Optional[LeadLedger] = None,
        verifier: Optional[RegistryVerifier] = None,
        review: Optional[ReviewBucket] = None,
        output_sink: Optional[OutputSinkProtocol] = None,
        monitor: Optional[ClassificationMonitor] = None,
        search_provider: Optional[SearchProviderProtocol] = None,
        budget: Optional[BudgetGuard] = None,
    ) -> None:
        self.config = config or Config()
        self.store = store
        self.classifier = classifier
        self.ledger = ledger
        self.verifier = verifier
        self.review = review
        self.output_sink = output_sink
        self.monitor = monitor
        self.search_provider = search_provider
        self.budget = budget
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._monitor_tasks: Set[asyncio.Task] = set()
        self._budget_exhausted = False
        self._state_counts: Dict[str, int] = {s.value: 0 for s in CandidateState}
        self._batches_processed = 0
        self._leads_admitted = 0
        self._errors: List[ErrorInfo] = []

    @property
    def budget_exhausted(self) -> bool:
        return self._budget_exhausted

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def process_batch(self, candidates: Sequence[Candidate], max_admissions: Optional[int] = None) -> BatchResult:
        """
        Run a batch of candidates through every stage.

        Args:
            candidates: Candidates in the order they should be admitted.
            max_admissions: Admit at most this many leads from the batch.

        Returns:
            A BatchResult with one ProcessingResult per candidate, in input order.
        """
        start_time = time.perf_counter()
        results = [ProcessingResult(candidate=c) for c in candidates]

        active = self._validate(results)
        active = await self._ledger_prefilter(active)
        active = await self._dedup_precheck(active)
        classified = await self._classify(active)
        await self._verify(classified)
        self._route_reviews(classified)
        self._fan_out_monitor(classified)
        leads, signatures = await self._admit(classified, max_admissions)
        await self._persist(leads, signatures)

        for r in results:
            self._state_counts[r.state.value] += 1
            increment("candidates_total", labels={"outcome": r.state.value})
        self._batches_processed += 1
        self._leads_admitted += len(leads)

        batch = BatchResult(
            results=results,
            budget_exhausted=self._budget_exhausted,
            processing_time=time.perf_counter() - start_time,
        )
        self.logger.info(
            "Batch processed", size=len(results), leads_admitted=len(leads), states=_nonzero(batch.counts())
        )
        return batch

    def _validate(self, results: List[ProcessingResult]) -> List[ProcessingResult]:
        valid = []
        for r in results:
            try:
                r.candidate.validate()
            except InvalidCandidateError as e:
                r.transition(CandidateState.REJECTED_INVALID, e.reason)
                self.logger.warning("Dropping invalid candidate", url=r.candidate.url, reason=e.reason)
                continue
            valid.append(r)
        return valid

    async def _ledger_prefilter(self, results: List[ProcessingResult]) -> List[ProcessingResult]:
        if self.ledger is None or not results:
            return results
        admitted = await self.ledger.admitted_keys(r.candidate.url for r in results)
        remaining = []
        for r in results:
            if self.ledger.lead_key(r.candidate.url) in admitted:
                r.transition(CandidateState.SKIPPED_LEDGER, "admitted in an earlier run")
            else:
                remaining.append(r)
        return remaining

    async def _dedup_precheck(self, results: List[ProcessingResult]) -> List[ProcessingResult]:
        remaining = []
        for r in results:
            check = await self.store.is_duplicate(r.candidate)
            r.duplicate_check = check
            r.transition(CandidateState.DEDUP_CHECKED)
            if check.duplicate:
                r.transition(CandidateState.REJECTED_DUPLICATE, check.reason)
            else:
                remaining.append(r)
        return remaining

    async def _classify(self, results: List[ProcessingResult]) -> List[ProcessingResult]:
        if self._budget_exhausted:
            for r in results:
                r.transition(CandidateState.DEFERRED_BUDGET, "budget exhausted")
            return []

        semaphore = asyncio.Semaphore(self.config.classifier.max_concurrency)

        async def _run(r: ProcessingResult) -> Optional[ClassificationResult]:
            async with semaphore:
                if self._budget_exhausted:
                    return None
                try:
                    return await self.classifier.classify(r.candidate)
                except BudgetExceededError as e:
                    self._halt_on_budget(e)
                    return None

        outcomes = await asyncio.gather(*(_run(r) for r in results))

        classified = []
        for r, outcome in zip(results, outcomes):
            if outcome is None:
                r.transition(CandidateState.DEFERRED_BUDGET, "budget exhausted")
                continue
            r.classification = outcome
            if outcome.error is not None:
                r.error_info = ErrorInfo(
                    error_type="ClassificationError",
                    error_message=outcome.error,
                    severity=ErrorSeverity.MEDIUM,
                    is_retryable=True,
                    context={"url": r.candidate.url},
                )
                self._errors.append(r.error_info)
            r.transition(CandidateState.CLASSIFIED)
            classified.append(r)
        return classified

    def _halt_on_budget(self, error: BudgetExceededError) -> None:
        if not self._budget_exhausted:
            self._budget_exhausted = True
            self.logger.warning(
                "Budget exhausted, deferring remaining candidates",
                service=error.service,
                spent=error.spent,
                limit=error.limit,
            )

    async def _verify(self, results: List[ProcessingResult]) -> None:
        if self.verifier is None or not self.config.pipeline.verify_nonprofits:
            return
        to_verify = [
            r
            for r in results
            if r.classification is not None
            and r.classification.error is None
            and r.classification.business_category is BusinessCategory.NONPROFIT
        ]
        if not to_verify:
            return
        verifications = await asyncio.gather(
            *(
                self.verifier.verify(
                    org_name=r.candidate.org_name or extract_org_name_from_title(r.candidate.title),
                    registry_id=r.candidate.registry_id,
                )
                for r in to_verify
            )
        )
        for r, verification in zip(to_verify, verifications):
            r.verification = verification
            r.classification = self.classifier.apply_verification(r.classification, verification)

    def _route_reviews(self, results: List[ProcessingResult]) -> None:
        if self.review is None:
            return
        for r in results:
            if r.classification is not None:
                r.review_item = self.review.add(r.candidate, r.classification, r.verification)

    def _fan_out_monitor(self, results: List[ProcessingResult]) -> None:
        if self.monitor is None or not results:
            return
        classifications = [r.classification for r in results if r.classification is not None]
        verifications = [r.verification for r in results if r.verification is not None]
        task = asyncio.create_task(self.monitor.analyze_async(classifications, verifications or None))
        self._monitor_tasks.add(task)
        task.add_done_callback(self._monitor_tasks.discard)

    async def _admit(
        self, results: List[ProcessingResult], max_admissions: Optional[int]
    ) -> tuple[List[Lead], Dict[str, str]]:
        leads: List[Lead] = []
        signatures: Dict[str, str] = {}
        for r in results:
            classification = r.classification
            if classification is None:
                continue
            if not classification.is_relevant:
                r.transition(CandidateState.REJECTED_IRRELEVANT, classification.error or "not relevant")
                continue
            if max_admissions is not None and len(leads) >= max_admissions:
                r.rejection_reason = "daily lead limit reached"
                continue
            precheck_vector = r.duplicate_check.vector if r.duplicate_check is not None else None
            check, record = await self.store.check_and_add(r.candidate, vector=precheck_vector)
            r.duplicate_check = check
            if check.duplicate or record is None:
                r.transition(CandidateState.REJECTED_DUPLICATE, check.reason)
                continue
            r.lead = Lead.from_classification(r.candidate, classification, r.verification)
            r.transition(CandidateState.ADMITTED)
            leads.append(r.lead)
            signatures[r.candidate.id] = record.content_signature
            self.logger.info(
                "Candidate admitted",
                url=r.candidate.url,
                organization=r.lead.organization,
                confidence=round(classification.confidence_score, 3),
            )
        return leads, signatures

    async def _persist(self, leads: List[Lead], signatures: Dict[str, str]) -> None:
        # Ledger rows only after the sink accepted the leads; a ledgered lead is never rewritten.
        if leads and self.output_sink is not None:
            await self.output_sink.write(leads)
        if leads and self.ledger is not None:
            await self.ledger.upsert_leads(leads, signatures)
        if self.review is not None:
            await self.review.flush()

    async def drain(self) -> None:
        """Wait for outstanding monitor fan-out tasks."""
        if self._monitor_tasks:
            await asyncio.gather(*list(self._monitor_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Full runs
    # ------------------------------------------------------------------

    async def _select_queries(self, queries: Sequence[str]) -> List[str]:
        if self.ledger is not None:
            fresh = await self.ledger.filter_new_queries(queries)
        else:
            fresh = list({query_key(q): q for q in queries if query_key(q)}.values())
        skipped = len(queries) - len(fresh)
        if skipped:
            self.logger.info("Skipping previously issued or repeated queries", skipped=skipped)
        return fresh[: self.config.budget.max_search_queries]

    async def run(self, queries: Optional[Sequence[str]] = None, run_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Search, process and admit leads until the daily limit or budget is hit.

        Returns:
            The run summary, also written atomically to the summary directory.
        """
        if self.search_provider is None:
            raise ConfigurationError("Pipeline.run requires a search provider")

        with bound_run_id(run_id) as bound_id:
            started_at = utcnow()
            start_time = time.perf_counter()
            if queries is None:
                queries = QueryBuilder(self.config.search).build()
            selected = await self._select_queries(queries)
            max_leads = self.config.search.max_leads_per_day
            batch_size = self.config.pipeline.batch_size

            self.logger.info("Starting run", queries=len(selected), max_leads=max_leads)

            admitted_before = self._leads_admitted
            queries_issued = 0
            search_errors = 0
            candidates_found = 0
            stop_reason = "queries exhausted"

            for query in selected:
                if self._leads_admitted - admitted_before >= max_leads:
                    stop_reason = "daily lead limit reached"
                    break
                if self._budget_exhausted:
                    stop_reason = "budget exhausted"
                    break
                try:
                    candidates = await self.search_provider.search(query)
                except BudgetExceededError as e:
                    self._halt_on_budget(e)
                    stop_reason = "budget exhausted"
                    break
                except SearchError as e:
                    search_errors += 1
                    self._errors.append(
                        ErrorInfo(
                            error_type="SearchError",
                            error_message=str(e),
                            severity=ErrorSeverity.LOW,
                            is_retryable=True,
                            context={"query": query},
                        )
                    )
                    self.logger.warning("Search failed", query=query, error=str(e))
                    continue

                queries_issued += 1
                candidates_found += len(candidates)

                # Ledger the query only once every candidate it returned is settled.
                settled = True
                for offset in range(0, len(candidates), batch_size):
                    remaining = max_leads - (self._leads_admitted - admitted_before)
                    if remaining <= 0 or self._budget_exhausted:
                        settled = False
                        break
                    batch = await self.process_batch(
                        candidates[offset : offset + batch_size], max_admissions=remaining
                    )
                    if any(_held_back(r) for r in batch.results):
                        settled = False
                if settled and self.ledger is not None:
                    await self.ledger.record_query(query, len(candidates))
                elif not settled:
                    self.logger.info("Query left open for a later run", query=query)
            else:
                if self._budget_exhausted:
                    stop_reason = "budget exhausted"
                elif self._leads_admitted - admitted_before >= max_leads:
                    stop_reason = "daily lead limit reached"

            await self.drain()

            summary = {
                "run_id": bound_id,
                "started_at": started_at.isoformat(),
                "finished_at": utcnow().isoformat(),
                "duration_seconds": round(time.perf_counter() - start_time, 3),
                "stop_reason": stop_reason,
                "queries_selected": len(selected),
                "queries_issued": queries_issued,
                "search_errors": search_errors,
                "candidates_found": candidates_found,
                "leads_admitted": self._leads_admitted - admitted_before,
                "budget_exhausted": self._budget_exhausted,
                "stats": self.get_stats(),
            }
            summary_path = Path(self.config.storage.summary_dir) / f"run_{bound_id}.json"
            summary["summary_written"] = await atomic_json_dump(summary, summary_path)
            self.logger.info(
                "Run complete",
                stop_reason=stop_reason,
                leads_admitted=summary["leads_admitted"],
                queries_issued=queries_issued,
            )
            return summary

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "batches_processed": self._batches_processed,
            "leads_admitted": self._leads_admitted,
            "states": dict(self._state_counts),
            "budget_exhausted": self._budget_exhausted,
            "errors": len(self._errors),
            "dedup": self.store.get_stats(),
        }
        if self.budget is not None:
            stats["budget"] = self.budget.status()
        if self.verifier is not None:
            stats["verification"] = self.verifier.get_stats()
        if self.review is not None:
            stats["review"] = self.review.get_stats()
        if self.search_provider is not None and hasattr(self.search_provider, "get_stats"):
            stats["search"] = self.search_provider.get_stats()
        return stats


def _held_back(result: ProcessingResult) -> bool:
    return result.state is CandidateState.DEFERRED_BUDGET or not result.is_terminal


def _nonzero(counts: Dict[str, int]) -> Dict[str, int]:
    return {k: v for k, v in counts.items() if v}
