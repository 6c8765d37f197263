"""
Lexical signal extraction and business-category inference.

Keyword families are matched with word-bounded, case-insensitive regexes.
Each pattern carries a canonical term, so "bids" and "bidding" both report
as "bid" and a family's matches come back deduplicated in pattern order.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from leadminer.protocols import BusinessCategory, LexicalSignals

logger = structlog.get_logger(__name__)

Pattern = Tuple[str, "re.Pattern[str]"]


def _compile(entries: Sequence[Tuple[str, str]]) -> List[Pattern]:
    return [(term, re.compile(rx, re.IGNORECASE)) for term, rx in entries]


AUCTION_PATTERNS = _compile(
    [
        ("silent auction", r"\bsilent auctions?\b"),
        ("live auction", r"\blive auctions?\b"),
        ("benefit auction", r"\bbenefit auctions?\b"),
        ("charity auction", r"\bcharity auctions?\b"),
        ("auction", r"(?<!silent )(?<!live )(?<!benefit )(?<!charity )\bauctions?\b"),
        ("bid", r"\bbid(?:s|der|ders|ding)?\b"),
        ("raffle", r"\braffles?\b"),
        ("gala", r"\bgalas?\b"),
        ("fundraiser", r"\bfundrais(?:er|ers|ing)\b"),
        ("prize", r"\bprizes?\b"),
        ("drawing", r"\bdrawings?\b"),
    ]
)

TRAVEL_PATTERNS = _compile(
    [
        ("travel package", r"\btravel packages?\b"),
        ("travel", r"\btravel(?:s|ing|ling)?\b"),
        ("trip", r"\btrips?\b"),
        ("vacation", r"\bvacations?\b"),
        ("cruise", r"\bcruises?\b"),
        ("resort", r"\bresorts?\b"),
        ("hotel", r"\bhotels?\b"),
        ("flight", r"\b(?:flights?|airfare)\b"),
        ("destination", r"\bdestinations?\b"),
        ("getaway", r"\bgetaways?\b"),
        ("tour", r"\btours?\b"),
    ]
)

NONPROFIT_PATTERNS = _compile(
    [
        ("nonprofit", r"\bnonprofits?\b"),
        ("non-profit", r"\bnon-profits?\b"),
        ("charity", r"\bcharit(?:y|ies|able)\b"),
        ("foundation", r"\bfoundations?\b"),
        ("501(c)(3)", r"\b501\s*\(?c\)?\s*\(?3\)?"),
        ("tax-deductible", r"\btax[- ]deductible\b"),
        ("church", r"\bchurch(?:es)?\b"),
        ("school", r"\bschools?\b"),
        ("university", r"\buniversit(?:y|ies)\b"),
        ("museum", r"\bmuseums?\b"),
        ("pta", r"\bp\.?t\.?a\b"),
        ("pto", r"\bp\.?t\.?o\b"),
        ("booster club", r"\bbooster clubs?\b"),
        ("alumni", r"\balumn(?:i|ae)\b"),
    ]
)

SERVICE_EXCLUSION_PATTERNS = _compile(
    [
        ("we provide", r"\bwe provide\b"),
        ("our services", r"\bour services\b"),
        ("contact us for", r"\bcontact us for\b"),
        ("request a quote", r"\brequest a quote\b"),
        ("custom quote", r"\bcustom quotes?\b"),
        ("pricing", r"\bpricing\b"),
        ("book now", r"\bbook now\b"),
        ("per person", r"\bper person\b"),
        ("per night", r"\bper night\b"),
        ("vendor", r"\bvendors?\b"),
        ("supplier", r"\bsuppliers?\b"),
        ("agency", r"\bagenc(?:y|ies)\b"),
        ("our clients", r"\bour clients\b"),
        ("consultation", r"\bconsultations?\b"),
    ]
)

STRUCTURE_EXCLUSION_PATTERNS = _compile(
    [
        ("llc", r"\bllc\b"),
        ("inc.", r"\binc\b\.?"),
        ("corporation", r"\bcorporation\b"),
        ("ltd", r"\bltd\b"),
        ("shareholders", r"\bshareholders?\b"),
        ("investors", r"\binvestors?\b"),
    ]
)

POLITICAL_EXCLUSION_PATTERNS = _compile(
    [
        ("political action committee", r"\bpolitical action committee\b"),
        ("campaign", r"\bcampaigns?\b"),
        ("candidate", r"\bcandidates?\b"),
        ("government", r"\bgovernment\b"),
        ("municipal", r"\bmunicipal\b"),
        ("federal", r"\bfederal\b"),
        ("state agency", r"\bstate agency\b"),
        ("department of", r"\bdepartment of\b"),
        ("city of", r"\bcity of\b"),
        ("county of", r"\bcounty of\b"),
    ]
)

EDUCATION_RE = re.compile(r"\b(?:school|university|college|pta|student|education)", re.IGNORECASE)
RELIGIOUS_RE = re.compile(
    r"\b(?:church|cathedral|synagogue|mosque|temple|parish|diocese|ministry)", re.IGNORECASE
)

DEFAULT_KNOWN_B2B_DOMAINS = ("winspire", "biddingforgood", "charitybuzz", "auctionpackages")


def match_terms(text: str, patterns: Iterable[Pattern]) -> Tuple[str, ...]:
    """Canonical terms of every pattern found in ``text``, in pattern order."""
    found: List[str] = []
    for term, rx in patterns:
        if term not in found and rx.search(text):
            found.append(term)
    return tuple(found)


class LexicalAnalyzer:
    """Keyword-family matcher and category heuristic."""

    def __init__(self, exclusion_ratio: float = 0.3, known_b2b_domains: Optional[Sequence[str]] = None):
        self.exclusion_ratio = exclusion_ratio
        self.known_b2b_domains = tuple(d.lower() for d in (known_b2b_domains or DEFAULT_KNOWN_B2B_DOMAINS))

    def extract(self, text: str) -> LexicalSignals:
        return LexicalSignals(
            auction=match_terms(text, AUCTION_PATTERNS),
            travel=match_terms(text, TRAVEL_PATTERNS),
            nonprofit=match_terms(text, NONPROFIT_PATTERNS),
            service_exclusions=match_terms(text, SERVICE_EXCLUSION_PATTERNS),
            structure_exclusions=match_terms(text, STRUCTURE_EXCLUSION_PATTERNS),
            political_exclusions=match_terms(text, POLITICAL_EXCLUSION_PATTERNS),
        )

    def is_known_b2b(self, url: str) -> bool:
        lowered = (url or "").lower()
        return any(domain in lowered for domain in self.known_b2b_domains)

    def categorize(self, signals: LexicalSignals, url: str = "") -> BusinessCategory:
        """
        Infer the organizational type behind a candidate.

        Known auction-package providers are always b2b_service. Otherwise a
        high share of exclusion terms makes the candidate commercial, split
        into vendor (structural or political language dominates) and
        b2b_service (service language dominates).
        """
        if self.is_known_b2b(url):
            return BusinessCategory.B2B_SERVICE
        if signals.exclusion_density > self.exclusion_ratio:
            structural = len(signals.structure_exclusions) + len(signals.political_exclusions)
            if structural > len(signals.service_exclusions):
                return BusinessCategory.VENDOR
            return BusinessCategory.B2B_SERVICE
        if signals.has_nonprofit:
            return BusinessCategory.NONPROFIT
        return BusinessCategory.UNKNOWN

    @staticmethod
    def is_educational(text: str) -> bool:
        return bool(EDUCATION_RE.search(text))

    @staticmethod
    def is_religious(text: str) -> bool:
        return bool(RELIGIOUS_RE.search(text))
