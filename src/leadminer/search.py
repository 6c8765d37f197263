"""
Search query generation and the web-search adapter.

``QueryBuilder`` expands query templates across the target months and keyword
sets. ``SerpSearchProvider`` turns organic search results into candidates.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlsplit

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from leadminer.classifier.date_filter import EventDateFilter
from leadminer.config.config import SearchConfig
from leadminer.exceptions import SearchError
from leadminer.limits import BudgetGuard, TokenBucketLimiter
from leadminer.protocols import Candidate
from leadminer.storage.ledger import query_key
from leadminer.utils.http import build_client, is_transient
from leadminer.verification import extract_ein

logger = structlog.get_logger(__name__)

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?\b\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")
EVENT_DATE_RE = re.compile(
    r"\b(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?|"
    r"Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b",
    re.IGNORECASE,
)
_TITLE_SPLIT_RE = re.compile(r"\s+[-|]\s+")

US_STATES: Dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas", "CA": "California",
    "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware", "FL": "Florida", "GA": "Georgia",
    "HI": "Hawaii", "ID": "Idaho", "IL": "Illinois", "IN": "Indiana", "IA": "Iowa",
    "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi", "MO": "Missouri",
    "MT": "Montana", "NE": "Nebraska", "NV": "Nevada", "NH": "New Hampshire", "NJ": "New Jersey",
    "NM": "New Mexico", "NY": "New York", "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio",
    "OK": "Oklahoma", "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah", "VT": "Vermont",
    "VA": "Virginia", "WA": "Washington", "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}  # fmt: skip


class QueryBuilder:
    """Expands templates x months x keywords into distinct search queries."""

    def __init__(self, config: SearchConfig):
        self.config = config
        self.date_filter = EventDateFilter.from_window(config.date_window)

    def build(self, limit: Optional[int] = None) -> List[str]:
        queries: List[str] = []
        seen = set()
        for month, year in self.date_filter.months():
            for template in self.config.query_templates:
                for keyword in self.config.keywords:
                    query = template.format(keyword=keyword, month=month, year=year)
                    key = query_key(query)
                    if key in seen:
                        continue
                    seen.add(key)
                    queries.append(query)
                    if limit is not None and len(queries) >= limit:
                        return queries
        return queries


def _state_patterns(states: Sequence[str]) -> List[re.Pattern]:
    patterns = []
    for state in states:
        code = state.strip().upper()
        name = US_STATES.get(code, state.strip())
        # Two-letter codes only match in upper case, names in any case.
        if code in US_STATES:
            patterns.append(re.compile(rf"\b{code}\b"))
        patterns.append(re.compile(rf"\b{re.escape(name)}\b", re.IGNORECASE))
    return patterns


def org_name_from_title(title: str) -> Optional[str]:
    head = _TITLE_SPLIT_RE.split(title.strip(), maxsplit=1)[0].strip()
    return head or None


def _dedupe(values: Sequence[str]) -> tuple:
    return tuple(dict.fromkeys(v.strip() for v in values if v.strip()))


class SerpSearchProvider:
    """Web search through a SerpAPI-compatible JSON endpoint."""

    def __init__(
        self,
        config: SearchConfig,
        limiter: Optional[TokenBucketLimiter] = None,
        budget: Optional[BudgetGuard] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.limiter = limiter
        self.budget = budget
        self._owns_client = client is None
        self._client = client or build_client(timeout=30.0)
        self._excluded_state_patterns = _state_patterns(config.exclude_states)
        self.requests_made = 0
        self.results_dropped = 0

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    async def _fetch(self, query: str) -> Dict[str, Any]:
        params = {
            "q": query,
            "engine": "google",
            "num": str(self.config.results_per_query),
            "gl": "us",
            "hl": "en",
        }
        if self.config.api_key is not None:
            params["api_key"] = self.config.api_key.get_secret_value()
        response = await self._client.get(self.config.api_base, params=params)
        response.raise_for_status()
        return response.json()

    async def search(self, query: str) -> List[Candidate]:
        """
        Run one query and map its organic results to candidates.

        Raises:
            BudgetExceededError: when the search quota or dollar budget is spent.
            SearchError: when the search service fails after retries.
        """
        if self.budget is not None:
            self.budget.reserve("search")
        if self.limiter is not None:
            await self.limiter.acquire()

        try:
            data = await self._fetch(query)
        except httpx.HTTPError as e:
            raise SearchError(f"Search request failed for {query!r}: {e}") from e
        except ValueError as e:
            raise SearchError(f"Search response is not JSON: {e}") from e
        self.requests_made += 1

        candidates = []
        for item in data.get("organic_results") or []:
            candidate = self.to_candidate(item, query)
            if candidate is not None:
                candidates.append(candidate)
        logger.info("Search completed", query=query, results=len(candidates))
        return candidates

    def is_skipped_domain(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in self.config.skip_domains)

    def mentions_excluded_state(self, text: str) -> bool:
        return any(p.search(text) for p in self._excluded_state_patterns)

    def to_candidate(self, item: Dict[str, Any], query: Optional[str] = None) -> Optional[Candidate]:
        url = (item.get("link") or "").strip()
        if not url:
            return None
        title = (item.get("title") or "").strip()
        snippet = (item.get("snippet") or "").strip()

        if self.is_skipped_domain(url):
            self.results_dropped += 1
            logger.debug("Skipping result from excluded domain", url=url)
            return None
        if self.mentions_excluded_state(f"{title} {snippet} {item.get('displayed_link') or ''}"):
            self.results_dropped += 1
            logger.debug("Skipping result from excluded state", url=url)
            return None

        date_match = EVENT_DATE_RE.search(snippet) or EVENT_DATE_RE.search(title)
        return Candidate(
            url=url,
            title=title,
            text=snippet,
            org_name=org_name_from_title(title),
            registry_id=extract_ein(snippet),
            event_title=title or None,
            event_date=date_match.group(0) if date_match else None,
            emails=_dedupe(EMAIL_RE.findall(snippet)),
            phones=_dedupe(PHONE_RE.findall(snippet)),
            source_query=query,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {"requests_made": self.requests_made, "results_dropped": self.results_dropped}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
