"""
Human review bucket for flagged classifications.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from leadminer.config.config import ClassifierConfig
from leadminer.protocols import (
    BusinessCategory,
    Candidate,
    ClassificationResult,
    ReviewItem,
    ReviewSinkProtocol,
    VerificationResult,
    extract_org_name_from_title,
)

logger = structlog.get_logger(__name__)

FALLBACK_REASON = "Manual review requested"


class ReviewBucket:
    """
    Collects review items for flagged candidates and forwards them to a sink.

    Items accumulate in memory until ``flush`` hands them to the review sink,
    so a batch produces one sink write.
    """

    def __init__(self, sink: Optional[ReviewSinkProtocol] = None, config: Optional[ClassifierConfig] = None):
        self.sink = sink
        self.config = config or ClassifierConfig()
        self._pending: List[ReviewItem] = []
        self.total_added = 0
        self.total_flushed = 0

    @property
    def pending(self) -> List[ReviewItem]:
        return list(self._pending)

    def _verification_failed(self, result: ClassificationResult, verification: Optional[VerificationResult]) -> bool:
        if result.business_category is not BusinessCategory.NONPROFIT:
            return False
        if verification is not None:
            return not verification.verified
        return result.verified is False

    def should_review(self, result: ClassificationResult, verification: Optional[VerificationResult] = None) -> bool:
        if result.needs_review:
            return True
        if self.config.review_band_low <= result.confidence_score <= self.config.review_band_high:
            return True
        if result.self_consistency_score < self.config.consistency_threshold:
            return True
        if result.has_auction_signal and not result.has_travel_signal:
            return True
        if self._verification_failed(result, verification):
            return True
        # Confident but the event date sits outside the search window.
        return result.confidence_score > self.config.review_band_high and not result.date_relevant

    def review_reason(self, result: ClassificationResult, verification: Optional[VerificationResult] = None) -> str:
        reasons = []
        if result.needs_review:
            reasons.append("Flagged by classifier")
        if self.config.review_band_low <= result.confidence_score <= self.config.review_band_high:
            reasons.append("Borderline confidence")
        if result.self_consistency_score < self.config.consistency_threshold:
            reasons.append("Low consistency")
        if result.has_auction_signal and not result.has_travel_signal:
            reasons.append("Auction without travel")
        if self._verification_failed(result, verification):
            reasons.append("Nonprofit verification failed")
        if not result.date_relevant:
            reasons.append("Date relevance unclear")
        if result.error is not None:
            reasons.append("Classification failed")
        return ", ".join(reasons) or FALLBACK_REASON

    @staticmethod
    def priority(result: ClassificationResult, verification: Optional[VerificationResult] = None) -> int:
        """Triage priority from 1 (lowest) to 10."""
        score = 5.0 + result.confidence_score * 2
        verified = verification.verified if verification is not None else bool(result.verified)
        if verified:
            score += 1
        if result.date_relevant:
            score += 1
        if result.self_consistency_score > 0.8:
            score += 1
        return min(10, max(1, round(score)))

    def build_item(
        self,
        candidate: Candidate,
        result: ClassificationResult,
        verification: Optional[VerificationResult] = None,
    ) -> ReviewItem:
        verified = verification.verified if verification is not None else result.verified
        return ReviewItem(
            candidate_id=candidate.id,
            url=candidate.url,
            org_name=candidate.org_name or extract_org_name_from_title(candidate.title),
            event_name=candidate.event_title or candidate.title,
            confidence_score=result.confidence_score,
            self_consistency_score=result.self_consistency_score,
            business_category=result.business_category,
            reason=self.review_reason(result, verification),
            priority=self.priority(result, verification),
            reasoning=result.reasoning,
            verified=verified,
            date_relevant=result.date_relevant,
            signals=result.signals,
        )

    def add(
        self,
        candidate: Candidate,
        result: ClassificationResult,
        verification: Optional[VerificationResult] = None,
    ) -> Optional[ReviewItem]:
        """Queue a review item when the result warrants one."""
        if not self.should_review(result, verification):
            return None
        item = self.build_item(candidate, result, verification)
        self._pending.append(item)
        self.total_added += 1
        logger.info("Queued for review", url=candidate.url, reason=item.reason, priority=item.priority)
        return item

    async def flush(self) -> int:
        """Send pending items to the sink, highest priority first. Returns the count sent."""
        if not self._pending:
            return 0
        items = sorted(self._pending, key=lambda i: i.priority, reverse=True)
        if self.sink is not None:
            await self.sink.submit(items)
        self._pending.clear()
        self.total_flushed += len(items)
        logger.debug("Review items flushed", count=len(items))
        return len(items)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending": len(self._pending),
            "total_added": self.total_added,
            "total_flushed": self.total_flushed,
        }
