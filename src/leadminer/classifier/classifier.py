"""
Multi-signal relevance classifier.

A candidate moves through a fixed sequence of stages:

1. Lexical extraction of auction, travel, nonprofit and exclusion terms
2. Business-category inference from those terms and the URL
3. A primary relevance judgment from the external text classifier
4. N-1 further independent passes to score self-consistency
5. Review routing
6. The final relevance decision, a hard AND of every requirement

Failures of the primary judgment never raise: they produce a conservative
non-relevant result flagged for review. Budget exhaustion is the one error
that propagates from classify, so the caller can stop issuing new calls;
classify_batch reports it and returns the candidates it deferred.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

import structlog

from leadminer.cache import TTLCache, make_key
from leadminer.config.config import ClassifierConfig
from leadminer.exceptions import BudgetExceededError
from leadminer.limits import BudgetGuard, TokenBucketLimiter
from leadminer.observability import histogram, increment
from leadminer.protocols import (
    BusinessCategory,
    Candidate,
    ClassificationResult,
    LexicalSignals,
    RelevanceJudgment,
    TextClassifierProtocol,
    VerificationResult,
)

from .date_filter import EventDateFilter
from .lexical import LexicalAnalyzer

logger = structlog.get_logger(__name__)

DATE_PENALTY = 0.8
COMMERCIAL_PENALTY = 0.5
EDUCATION_BOOST = 1.1
RELIGIOUS_PENALTY = 0.9


def consistency_score(primary: RelevanceJudgment, others: Sequence[Optional[RelevanceJudgment]]) -> float:
    """
    Agreement of extra passes with the primary, discounted by confidence drift.

    score = agreement * (1 - mean |confidence_i - primary.confidence|)

    A failed pass (None) counts as a disagreement with confidence 0.
    """
    if not others:
        return 1.0
    agree = 0
    deviation = 0.0
    for other in others:
        if other is None:
            deviation += primary.confidence
            continue
        if other.relevant == primary.relevant:
            agree += 1
        deviation += abs(other.confidence - primary.confidence)
    agreement = agree / len(others)
    score = agreement * (1.0 - deviation / len(others))
    return max(0.0, min(1.0, score))


@dataclass
class ClassificationBatch:
    """Results of a batch, in input order, plus candidates deferred by the budget."""

    results: List[ClassificationResult] = field(default_factory=list)
    deferred: List[Candidate] = field(default_factory=list)
    budget_error: Optional[BudgetExceededError] = None

    @property
    def budget_exhausted(self) -> bool:
        return self.budget_error is not None


class Classifier:
    """
    Staged relevance classifier for candidate event pages.

    Collaborators are injected: the text classifier does the judging, the
    cache makes repeated primary judgments idempotent within a run, and the
    limiter and budget guard gate every external call.
    """

    def __init__(
        self,
        text_classifier: TextClassifierProtocol,
        config: Optional[ClassifierConfig] = None,
        cache: Optional[TTLCache] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        budget: Optional[BudgetGuard] = None,
        date_filter: Optional[EventDateFilter] = None,
        analyzer: Optional[LexicalAnalyzer] = None,
    ):
        self.config = config or ClassifierConfig()
        self.text_classifier = text_classifier
        self.cache = cache
        self.limiter = limiter
        self.budget = budget
        self.date_filter = date_filter
        self.analyzer = analyzer or LexicalAnalyzer(
            exclusion_ratio=self.config.exclusion_ratio,
            known_b2b_domains=self.config.known_b2b_domains,
        )

        logger.info(
            "Initialized Classifier",
            confidence_threshold=self.config.confidence_threshold,
            review_band=(self.config.review_band_low, self.config.review_band_high),
            consistency_passes=self.config.consistency_passes,
        )

    # ------------------------------------------------------------------
    # External calls
    # ------------------------------------------------------------------

    async def _judge(self, text: str, signals: LexicalSignals) -> RelevanceJudgment:
        if self.budget is not None:
            self.budget.reserve("classification")
        if self.limiter is not None:
            await self.limiter.acquire()
        return await asyncio.wait_for(
            self.text_classifier.classify_text(text, signals),
            timeout=self.config.timeout_seconds,
        )

    async def _primary_judgment(self, candidate: Candidate, signals: LexicalSignals) -> RelevanceJudgment:
        key = make_key(candidate.title, candidate.text)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Using cached judgment", url=candidate.url)
                return cached
        judgment = await self._judge(candidate.full_text, signals)
        if self.cache is not None:
            self.cache.set(key, judgment)
        return judgment

    async def _extra_passes(self, candidate: Candidate, signals: LexicalSignals) -> List[Optional[RelevanceJudgment]]:
        passes: List[Optional[RelevanceJudgment]] = []
        for _ in range(self.config.consistency_passes - 1):
            try:
                passes.append(await self._judge(candidate.full_text, signals))
            except BudgetExceededError:
                logger.warning("Budget exhausted during consistency pass", url=candidate.url)
                passes.append(None)
            except Exception as e:
                logger.warning("Consistency pass failed", url=candidate.url, error=str(e))
                passes.append(None)
        return passes

    # ------------------------------------------------------------------
    # Decision rules
    # ------------------------------------------------------------------

    def adjust_confidence(
        self, confidence: float, category: BusinessCategory, date_relevant: bool, text: str
    ) -> float:
        adjusted = confidence
        if not date_relevant:
            adjusted *= DATE_PENALTY
        if category.is_commercial:
            adjusted *= COMMERCIAL_PENALTY
        if self.analyzer.is_educational(text):
            adjusted *= EDUCATION_BOOST
        elif self.analyzer.is_religious(text):
            adjusted *= RELIGIOUS_PENALTY
        return max(0.0, min(1.0, adjusted))

    def needs_review(
        self,
        confidence: float,
        consistency: float,
        signals: LexicalSignals,
        category: BusinessCategory,
        verification: Optional[VerificationResult] = None,
    ) -> bool:
        if self.config.review_band_low <= confidence <= self.config.review_band_high:
            return True
        if consistency < self.config.consistency_threshold:
            return True
        if signals.has_auction and not signals.has_travel:
            return True
        if category is BusinessCategory.NONPROFIT and verification is not None and not verification.verified:
            return True
        return False

    def is_relevant(
        self, judgment: RelevanceJudgment, confidence: float, signals: LexicalSignals, category: BusinessCategory
    ) -> bool:
        return (
            judgment.relevant
            and signals.has_auction
            and signals.has_travel
            and category is BusinessCategory.NONPROFIT
            and confidence >= self.config.confidence_threshold
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def classify(
        self, candidate: Candidate, verification: Optional[VerificationResult] = None
    ) -> ClassificationResult:
        """Classify one candidate. Raises only InvalidCandidateError and BudgetExceededError."""
        candidate.validate()
        start_time = time.perf_counter()
        text = candidate.full_text
        signals = self.analyzer.extract(text)
        category = self.analyzer.categorize(signals, candidate.url)
        date_relevant = self.date_filter.is_relevant(candidate.event_date) if self.date_filter else True

        try:
            primary = await self._primary_judgment(candidate, signals)
        except BudgetExceededError:
            raise
        except asyncio.TimeoutError:
            return self._failure(candidate, f"timed out after {self.config.timeout_seconds}s")
        except Exception as e:
            return self._failure(candidate, str(e) or e.__class__.__name__)

        extra = await self._extra_passes(candidate, signals)
        consistency = consistency_score(primary, extra)
        confidence = self.adjust_confidence(primary.confidence, category, date_relevant, text)
        review = self.needs_review(confidence, consistency, signals, category, verification)
        relevant = self.is_relevant(primary, confidence, signals, category)

        reasoning = primary.rationale or "No rationale provided"
        reasoning += (
            f" [category={category.value}, auction={signals.has_auction}, travel={signals.has_travel}, "
            f"nonprofit_terms={len(signals.nonprofit)}, exclusions={len(signals.exclusions)}]"
        )

        result = ClassificationResult(
            candidate_id=candidate.id,
            is_relevant=relevant,
            confidence_score=confidence,
            business_category=category,
            has_auction_signal=signals.has_auction,
            has_travel_signal=signals.has_travel,
            self_consistency_score=consistency,
            needs_review=review,
            reasoning=reasoning,
            signals=signals,
            date_relevant=date_relevant,
            verified=verification.verified if verification is not None else None,
        )

        increment("classifications_total", labels={"category": category.value})
        histogram("classification_latency_seconds", time.perf_counter() - start_time)
        if review:
            increment("review_flags_total")
        logger.debug(
            "Candidate classified",
            url=candidate.url,
            relevant=relevant,
            confidence=round(confidence, 3),
            consistency=round(consistency, 3),
            category=category.value,
            needs_review=review,
        )
        return result

    def _failure(self, candidate: Candidate, error: str) -> ClassificationResult:
        message = f"Classification failed: {error}"
        increment("classification_failures_total")
        increment("review_flags_total")
        logger.warning("Classification failed", url=candidate.url, error=error)
        return ClassificationResult(
            candidate_id=candidate.id,
            is_relevant=False,
            confidence_score=0.0,
            business_category=BusinessCategory.UNKNOWN,
            has_auction_signal=False,
            has_travel_signal=False,
            self_consistency_score=0.0,
            needs_review=True,
            reasoning=message,
            date_relevant=False,
            error=message,
        )

    def apply_verification(
        self, result: ClassificationResult, verification: Optional[VerificationResult]
    ) -> ClassificationResult:
        """Fold a registry verification outcome into an existing result."""
        if verification is None or result.error is not None:
            return result
        review = result.needs_review or self.needs_review(
            result.confidence_score,
            result.self_consistency_score,
            result.signals,
            result.business_category,
            verification,
        )
        return replace(result, verified=verification.verified, needs_review=review)

    async def classify_batch(self, candidates: Sequence[Candidate]) -> ClassificationBatch:
        """
        Classify candidates concurrently, preserving input order.

        Budget exhaustion does not raise: results completed before it are kept,
        and the candidates that could not be classified come back as deferred.
        """
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        exhausted: List[BudgetExceededError] = []

        async def _run(candidate: Candidate) -> Optional[ClassificationResult]:
            async with semaphore:
                if exhausted:
                    return None
                try:
                    return await self.classify(candidate)
                except BudgetExceededError as e:
                    exhausted.append(e)
                    return None

        outcomes = await asyncio.gather(*(_run(c) for c in candidates))
        batch = ClassificationBatch(budget_error=exhausted[0] if exhausted else None)
        for candidate, outcome in zip(candidates, outcomes):
            if outcome is None:
                batch.deferred.append(candidate)
            else:
                batch.results.append(outcome)

        if batch.budget_exhausted:
            logger.warning(
                "Budget exhausted during batch classification",
                classified=len(batch.results),
                deferred=len(batch.deferred),
            )
        logger.info(
            "Batch classification complete",
            total=len(batch.results),
            relevant=sum(1 for r in batch.results if r.is_relevant),
        )
        return batch

    def get_classification_stats(self, results: Sequence[ClassificationResult]) -> Dict[str, Any]:
        relevant = [r for r in results if r.is_relevant]
        categories: Dict[str, int] = {c.value: 0 for c in BusinessCategory}
        for r in results:
            categories[r.business_category.value] += 1
        total = len(results)
        return {
            "total": total,
            "relevant": len(relevant),
            "irrelevant": total - len(relevant),
            "needs_review": sum(1 for r in results if r.needs_review),
            "failed": sum(1 for r in results if r.error is not None),
            "average_confidence": (sum(r.confidence_score for r in relevant) / len(relevant)) if relevant else 0.0,
            "average_consistency": round(sum(r.self_consistency_score for r in results) / total, 4) if total else 0.0,
            "categories": categories,
        }

    def filter_by_confidence(self, results: Sequence[ClassificationResult]) -> List[ClassificationResult]:
        return [r for r in results if r.confidence_score >= self.config.confidence_threshold]

