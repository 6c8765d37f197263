"""
Protocols and dataclasses for LeadMiner.

This module defines the data model shared by every stage of the lead pipeline
and the contracts of the external collaborators the core depends on:

- Candidate records produced by the search layer
- Classification results, lexical signals and business categories
- Fingerprint records and duplicate checks for the dedup engine
- Monitoring snapshots and alerts
- Leads and review items emitted to the sinks
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple
from uuid import uuid4

import numpy as np

from leadminer.exceptions import InvalidCandidateError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================


class BusinessCategory(Enum):
    """Inferred organizational type of the entity behind a candidate."""

    NONPROFIT = "nonprofit"
    B2B_SERVICE = "b2b_service"
    VENDOR = "vendor"
    UNKNOWN = "unknown"

    @property
    def is_commercial(self) -> bool:
        return self in (BusinessCategory.B2B_SERVICE, BusinessCategory.VENDOR)


class ErrorSeverity(Enum):
    """Error severity levels for structured error handling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class AlertType(Enum):
    HIGH_B2B_DETECTION = "high_b2b_detection"
    LOW_NONPROFIT_RATE = "low_nonprofit_rate"
    VERIFICATION_FAILURE = "verification_failure"
    FALSE_POSITIVE_PATTERN = "false_positive_pattern"


class LeadStatus(Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    REJECTED = "rejected"


class ReviewStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_INFO = "needs_info"


class VerificationSource(Enum):
    IRS = "irs"
    GUIDESTAR = "guidestar"
    MANUAL = "manual"
    FAILED = "failed"


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass
class ErrorInfo:
    """Detailed error information for debugging and monitoring."""

    error_type: str = ""
    error_message: str = ""
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    is_retryable: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Candidate:
    """A unit of scraped text plus optional structured fields. Immutable."""

    url: str
    title: str = ""
    text: str = ""
    org_name: Optional[str] = None
    registry_id: Optional[str] = None
    event_title: Optional[str] = None
    event_date: Optional[str] = None
    emails: Tuple[str, ...] = ()
    phones: Tuple[str, ...] = ()
    source_query: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)

    def validate(self) -> None:
        """Raise InvalidCandidateError if required fields are missing."""
        if not self.url or not self.url.strip():
            raise InvalidCandidateError("missing url", url=self.url)
        if not (self.title or "").strip() and not (self.text or "").strip():
            raise InvalidCandidateError("empty title and text", url=self.url)

    @property
    def full_text(self) -> str:
        return f"{self.title} {self.text}".strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        """Build a candidate from a loosely-typed mapping (JSONL input, API payloads)."""
        return cls(
            url=str(data.get("url") or ""),
            title=str(data.get("title") or ""),
            text=str(data.get("text") or data.get("content") or data.get("snippet") or ""),
            org_name=data.get("org_name") or data.get("organization"),
            registry_id=data.get("registry_id") or data.get("ein"),
            event_title=data.get("event_title"),
            event_date=data.get("event_date"),
            emails=tuple(data.get("emails") or ()),
            phones=tuple(data.get("phones") or ()),
            source_query=data.get("source_query"),
            id=str(data.get("id") or uuid4().hex),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "text": self.text,
            "org_name": self.org_name,
            "registry_id": self.registry_id,
            "event_title": self.event_title,
            "event_date": self.event_date,
            "emails": list(self.emails),
            "phones": list(self.phones),
            "source_query": self.source_query,
        }


@dataclass(frozen=True)
class LexicalSignals:
    """Matched-term lists for each keyword family."""

    auction: Tuple[str, ...] = ()
    travel: Tuple[str, ...] = ()
    nonprofit: Tuple[str, ...] = ()
    service_exclusions: Tuple[str, ...] = ()
    structure_exclusions: Tuple[str, ...] = ()
    political_exclusions: Tuple[str, ...] = ()

    @property
    def has_auction(self) -> bool:
        return bool(self.auction)

    @property
    def has_travel(self) -> bool:
        return bool(self.travel)

    @property
    def has_nonprofit(self) -> bool:
        return bool(self.nonprofit)

    @property
    def exclusions(self) -> Tuple[str, ...]:
        return self.service_exclusions + self.structure_exclusions + self.political_exclusions

    @property
    def exclusion_density(self) -> float:
        """Exclusion matches as a fraction of all matched signal terms."""
        excluded = len(self.exclusions)
        total = excluded + len(self.auction) + len(self.travel) + len(self.nonprofit)
        if total == 0:
            return 0.0
        return excluded / total

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "auction": list(self.auction),
            "travel": list(self.travel),
            "nonprofit": list(self.nonprofit),
            "service_exclusions": list(self.service_exclusions),
            "structure_exclusions": list(self.structure_exclusions),
            "political_exclusions": list(self.political_exclusions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LexicalSignals":
        return cls(**{name: tuple(data.get(name) or ()) for name in cls.__dataclass_fields__})


@dataclass(frozen=True)
class RelevanceJudgment:
    """Output of one pass of the external text-classification capability."""

    relevant: bool
    confidence: float
    rationale: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


@dataclass
class VerificationResult:
    """Outcome of a nonprofit-registry lookup."""

    verified: bool
    source: VerificationSource = VerificationSource.FAILED
    org_name: Optional[str] = None
    registry_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    verified_at: datetime = field(default_factory=utcnow)

    @classmethod
    def failed(cls, reason: str, org_name: Optional[str] = None, registry_id: Optional[str] = None) -> "VerificationResult":
        return cls(
            verified=False,
            source=VerificationSource.FAILED,
            org_name=org_name,
            registry_id=registry_id,
            details={"error": reason},
        )


@dataclass
class ClassificationResult:
    """Relevance decision attached to exactly one candidate."""

    candidate_id: str
    is_relevant: bool
    confidence_score: float
    business_category: BusinessCategory
    has_auction_signal: bool
    has_travel_signal: bool
    self_consistency_score: float
    needs_review: bool
    reasoning: str
    signals: LexicalSignals = field(default_factory=LexicalSignals)
    date_relevant: bool = True
    verified: Optional[bool] = None
    error: Optional[str] = None
    classified_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "is_relevant": self.is_relevant,
            "confidence_score": round(self.confidence_score, 4),
            "business_category": self.business_category.value,
            "has_auction_signal": self.has_auction_signal,
            "has_travel_signal": self.has_travel_signal,
            "self_consistency_score": round(self.self_consistency_score, 4),
            "needs_review": self.needs_review,
            "reasoning": self.reasoning,
            "signals": self.signals.to_dict(),
            "date_relevant": self.date_relevant,
            "verified": self.verified,
            "error": self.error,
            "classified_at": self.classified_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        """Rebuild a result written by ``to_dict``."""
        classified_at = data.get("classified_at")
        return cls(
            candidate_id=str(data["candidate_id"]),
            is_relevant=bool(data["is_relevant"]),
            confidence_score=float(data["confidence_score"]),
            business_category=BusinessCategory(data.get("business_category", "unknown")),
            has_auction_signal=bool(data.get("has_auction_signal")),
            has_travel_signal=bool(data.get("has_travel_signal")),
            self_consistency_score=float(data.get("self_consistency_score", 0.0)),
            needs_review=bool(data.get("needs_review")),
            reasoning=str(data.get("reasoning") or ""),
            signals=LexicalSignals.from_dict(data.get("signals") or {}),
            date_relevant=bool(data.get("date_relevant", True)),
            verified=data.get("verified"),
            error=data.get("error"),
            classified_at=datetime.fromisoformat(classified_at) if classified_at else utcnow(),
        )


@dataclass
class FingerprintRecord:
    """Identity keys and content signature of one admitted candidate.

    Keys and vector never change after creation; the contact sets only grow
    when duplicate clusters are merged into this record.
    """

    record_id: str
    normalized_url: str
    registry_id: Optional[str]
    normalized_org_name: Optional[str]
    content_signature: str
    vector: Optional[np.ndarray] = None
    admitted_at: datetime = field(default_factory=utcnow)
    emails: Set[str] = field(default_factory=set)
    phones: Set[str] = field(default_factory=set)
    source_urls: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DuplicateCheck:
    """Answer to "is this candidate a duplicate of something already admitted?"."""

    duplicate: bool
    reason: str
    layer: Optional[str] = None
    matched_record: Optional[FingerprintRecord] = None
    similarity: Optional[float] = None
    # Embedding computed during the check, reused at admission.
    vector: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @classmethod
    def unique(cls, similarity: Optional[float] = None, vector: Optional[np.ndarray] = None) -> "DuplicateCheck":
        return cls(duplicate=False, reason="unique", similarity=similarity, vector=vector)


@dataclass
class DuplicateCluster:
    """A representative (first-seen) candidate and the candidates duplicating it."""

    representative: Candidate
    members: List[Candidate] = field(default_factory=list)
    similarities: List[float] = field(default_factory=list)

    @property
    def size(self) -> int:
        return 1 + len(self.members)


@dataclass(frozen=True)
class VerificationStats:
    verified: int
    failed: int

    @property
    def verification_rate(self) -> float:
        total = self.verified + self.failed
        return self.verified / total if total else 0.0


@dataclass(frozen=True)
class MonitoringSnapshot:
    """Rollup over one batch of classification results. Never mutated."""

    total_classified: int
    relevant_count: int
    category_counts: Dict[str, int]
    average_confidence: float
    review_count: int
    potential_false_positives: Tuple[str, ...]
    excluded_b2b_count: int
    verification_stats: Optional[VerificationStats] = None
    timestamp: datetime = field(default_factory=utcnow)

    def _rate(self, count: int) -> float:
        return count / self.total_classified if self.total_classified else 0.0

    @property
    def nonprofit_rate(self) -> float:
        return self._rate(self.category_counts.get(BusinessCategory.NONPROFIT.value, 0))

    @property
    def b2b_rate(self) -> float:
        commercial = self.category_counts.get(BusinessCategory.B2B_SERVICE.value, 0) + self.category_counts.get(
            BusinessCategory.VENDOR.value, 0
        )
        return self._rate(commercial)

    @property
    def review_rate(self) -> float:
        return self._rate(self.review_count)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "total_classified": self.total_classified,
            "relevant_count": self.relevant_count,
            "category_counts": dict(self.category_counts),
            "average_confidence": round(self.average_confidence, 4),
            "review_count": self.review_count,
            "potential_false_positives": list(self.potential_false_positives),
            "excluded_b2b_count": self.excluded_b2b_count,
            "nonprofit_rate": round(self.nonprofit_rate, 4),
            "b2b_rate": round(self.b2b_rate, 4),
            "review_rate": round(self.review_rate, 4),
        }
        if self.verification_stats is not None:
            data["verification_stats"] = {
                "verified": self.verification_stats.verified,
                "failed": self.verification_stats.failed,
                "verification_rate": round(self.verification_stats.verification_rate, 4),
            }
        return data


@dataclass(frozen=True)
class Alert:
    type: AlertType
    severity: AlertSeverity
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Lead:
    """An admitted lead forwarded to the output sink."""

    candidate_id: str
    url: str
    organization: str
    event_name: str
    event_date: Optional[str]
    confidence_score: float
    business_category: BusinessCategory
    has_auction_signal: bool
    has_travel_signal: bool
    self_consistency_score: float
    emails: Tuple[str, ...] = ()
    phones: Tuple[str, ...] = ()
    registry_id: Optional[str] = None
    verification_source: Optional[str] = None
    needs_review: bool = False
    status: LeadStatus = LeadStatus.NEW
    admitted_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_classification(
        cls,
        candidate: Candidate,
        result: ClassificationResult,
        verification: Optional[VerificationResult] = None,
    ) -> "Lead":
        return cls(
            candidate_id=candidate.id,
            url=candidate.url,
            organization=candidate.org_name or extract_org_name_from_title(candidate.title),
            event_name=candidate.event_title or candidate.title,
            event_date=candidate.event_date,
            confidence_score=result.confidence_score,
            business_category=result.business_category,
            has_auction_signal=result.has_auction_signal,
            has_travel_signal=result.has_travel_signal,
            self_consistency_score=result.self_consistency_score,
            emails=candidate.emails,
            phones=candidate.phones,
            registry_id=candidate.registry_id,
            verification_source=verification.source.value if verification else None,
            needs_review=result.needs_review,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "url": self.url,
            "organization": self.organization,
            "event_name": self.event_name,
            "event_date": self.event_date,
            "confidence_score": round(self.confidence_score, 4),
            "business_category": self.business_category.value,
            "has_auction_signal": self.has_auction_signal,
            "has_travel_signal": self.has_travel_signal,
            "self_consistency_score": round(self.self_consistency_score, 4),
            "emails": list(self.emails),
            "phones": list(self.phones),
            "registry_id": self.registry_id,
            "verification_source": self.verification_source,
            "needs_review": self.needs_review,
            "status": self.status.value,
            "admitted_at": self.admitted_at.isoformat(),
        }


@dataclass
class ReviewItem:
    """A flagged candidate queued for human triage."""

    candidate_id: str
    url: str
    org_name: str
    event_name: str
    confidence_score: float
    self_consistency_score: float
    business_category: BusinessCategory
    reason: str
    priority: int
    reasoning: str = ""
    verified: Optional[bool] = None
    date_relevant: bool = True
    signals: LexicalSignals = field(default_factory=LexicalSignals)
    status: ReviewStatus = ReviewStatus.PENDING
    added_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: f"review_{uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "candidate_id": self.candidate_id,
            "url": self.url,
            "org_name": self.org_name,
            "event_name": self.event_name,
            "confidence_score": round(self.confidence_score, 4),
            "self_consistency_score": round(self.self_consistency_score, 4),
            "business_category": self.business_category.value,
            "reason": self.reason,
            "priority": self.priority,
            "reasoning": self.reasoning,
            "verified": self.verified,
            "date_relevant": self.date_relevant,
            "auction_keywords": list(self.signals.auction),
            "travel_keywords": list(self.signals.travel),
            "nonprofit_keywords": list(self.signals.nonprofit),
            "status": self.status.value,
            "added_at": self.added_at.isoformat(),
        }


_TITLE_SEPARATOR_RE = re.compile(r"\s+[-|]\s+")
_EVENT_WORDS_RE = re.compile(r"\s+(auction|raffle|gala|event|fundraiser|benefit|dinner|luncheon)\b.*$", re.IGNORECASE)
_SEASON_WORDS_RE = re.compile(r"\s+(annual|spring|fall|summer|winter|\d{4})\s+", re.IGNORECASE)


def extract_org_name_from_title(title: str) -> str:
    """Best-effort organization name from an event page title."""
    head = _TITLE_SEPARATOR_RE.split(title or "", maxsplit=1)[0]
    cleaned = _SEASON_WORDS_RE.sub(" ", _EVENT_WORDS_RE.sub("", head)).strip()
    return cleaned or "Unknown Organization"


# ============================================================================
# Protocols for external collaborators
# ============================================================================


class SearchProviderProtocol(Protocol):
    """Crawl/search layer: returns zero or more candidates per query."""

    async def search(self, query: str) -> List[Candidate]:
        ...


class TextClassifierProtocol(Protocol):
    """Relevance judgment capability. May be non-deterministic across calls."""

    async def classify_text(self, text: str, signals: LexicalSignals) -> RelevanceJudgment:
        ...


class EmbedderProtocol(Protocol):
    """Fixed-length semantic vector for a text."""

    dim: int

    async def embed(self, text: str) -> np.ndarray:
        ...


class RegistryVerifierProtocol(Protocol):
    """Nonprofit registry lookup by name or registry ID."""

    async def verify(self, org_name: Optional[str] = None, registry_id: Optional[str] = None) -> VerificationResult:
        ...


class OutputSinkProtocol(Protocol):
    async def write(self, leads: Sequence[Lead]) -> None:
        ...


class ReviewSinkProtocol(Protocol):
    async def submit(self, items: Sequence[ReviewItem]) -> None:
        ...


__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "BusinessCategory",
    "Candidate",
    "ClassificationResult",
    "DuplicateCheck",
    "DuplicateCluster",
    "EmbedderProtocol",
    "ErrorInfo",
    "ErrorSeverity",
    "FingerprintRecord",
    "Lead",
    "LeadStatus",
    "LexicalSignals",
    "MonitoringSnapshot",
    "OutputSinkProtocol",
    "RegistryVerifierProtocol",
    "RelevanceJudgment",
    "ReviewItem",
    "ReviewSinkProtocol",
    "ReviewStatus",
    "SearchProviderProtocol",
    "TextClassifierProtocol",
    "VerificationResult",
    "VerificationSource",
    "VerificationStats",
    "extract_org_name_from_title",
    "utcnow",
]
