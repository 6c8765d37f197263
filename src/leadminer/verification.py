"""
Nonprofit registry verification.

``ProPublicaVerifier`` talks to the ProPublica Nonprofit Explorer API (an
IRS-derived registry). ``RegistryVerifier`` wraps any registry adapter with a
24h cache and a rate limiter, and turns every failure into an unverified
result instead of an exception.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from leadminer.cache import TTLCache
from leadminer.config.config import VerificationConfig
from leadminer.exceptions import VerificationError
from leadminer.limits import TokenBucketLimiter
from leadminer.protocols import RegistryVerifierProtocol, VerificationResult, VerificationSource
from leadminer.utils.http import build_client, is_transient

logger = structlog.get_logger(__name__)

MIN_NAME_SCORE = 0.3
_EIN_RE = re.compile(r"\b(\d{2})-?(\d{7})\b")


def extract_ein(text: str) -> Optional[str]:
    """First EIN-shaped number in ``text``, digits only."""
    match = _EIN_RE.search(text or "")
    return f"{match.group(1)}{match.group(2)}" if match else None


def name_match_score(search_name: str, candidate_name: str) -> float:
    """
    Similarity of a registry name to the searched name.

    Exact match scores 1.0, the registry name containing the search 0.8, the
    search containing the registry name 0.6, and otherwise the share of
    common words.
    """
    wanted = search_name.lower().strip()
    found = candidate_name.lower().strip()
    if not wanted or not found:
        return 0.0
    if found == wanted:
        return 1.0
    if wanted in found:
        return 0.8
    if found in wanted:
        return 0.6
    wanted_words = wanted.split()
    found_words = found.split()
    common = [w for w in wanted_words if w in found_words]
    return len(common) / max(len(wanted_words), len(found_words))


def best_name_match(search_name: str, organizations: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    best: Optional[Dict[str, Any]] = None
    best_score = 0.0
    for org in organizations:
        name = org.get("name")
        if not name:
            continue
        score = name_match_score(search_name, name)
        if score > best_score:
            best, best_score = org, score
    return best if best_score > MIN_NAME_SCORE else None


class ProPublicaVerifier:
    """Registry adapter for the ProPublica Nonprofit Explorer API."""

    def __init__(self, config: Optional[VerificationConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or VerificationConfig()
        self._owns_client = client is None
        self._client = client or build_client(
            timeout=self.config.timeout_seconds,
            headers={"User-Agent": self.config.user_agent, "Accept": "application/json"},
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        response = await self._client.get(f"{self.config.api_base.rstrip('/')}/{path}", params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def verify(self, org_name: Optional[str] = None, registry_id: Optional[str] = None) -> VerificationResult:
        """
        Look up an organization by EIN, falling back to a name search.

        Raises:
            VerificationError: when the registry cannot be reached or answers
                with something unusable.
        """
        try:
            if registry_id:
                result = await self._verify_ein(registry_id, org_name)
                if result.verified or not org_name:
                    return result
            if org_name:
                return await self._verify_name(org_name)
        except httpx.HTTPError as e:
            raise VerificationError(f"Registry request failed: {e}") from e
        except ValueError as e:
            raise VerificationError(f"Registry response is not JSON: {e}") from e
        return VerificationResult.failed("no organization name or registry id")

    async def _verify_ein(self, ein: str, org_name: Optional[str]) -> VerificationResult:
        digits = re.sub(r"\D", "", ein)
        data = await self._get(f"organizations/{digits}.json")
        org = (data or {}).get("organization")
        if not org:
            return VerificationResult.failed("Not found in nonprofit registry", org_name=org_name, registry_id=digits)
        logger.debug("Registry match by EIN", ein=digits, name=org.get("name"))
        return VerificationResult(
            verified=True,
            source=VerificationSource.IRS,
            org_name=org.get("name") or org_name,
            registry_id=digits,
            details={
                "city": org.get("city"),
                "state": org.get("state"),
                "ntee_code": org.get("ntee_code"),
                "subsection_code": org.get("subsection_code"),
                "ruling_date": org.get("ruling_date"),
            },
        )

    async def _verify_name(self, org_name: str) -> VerificationResult:
        data = await self._get("search.json", params={"q": org_name})
        organizations = (data or {}).get("organizations") or []
        match = best_name_match(org_name, organizations)
        if match is None or not match.get("ein"):
            return VerificationResult.failed("Not found in nonprofit registry", org_name=org_name)
        logger.debug("Registry candidate by name", searched=org_name, found=match.get("name"), ein=match.get("ein"))
        return await self._verify_ein(str(match["ein"]), org_name)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class RegistryVerifier:
    """Cached, rate-limited front for a registry adapter that never raises."""

    def __init__(
        self,
        registry: RegistryVerifierProtocol,
        cache: Optional[TTLCache] = None,
        limiter: Optional[TokenBucketLimiter] = None,
    ):
        self.registry = registry
        self.cache = cache if cache is not None else TTLCache(name="verification", ttl_seconds=24 * 3600.0)
        self.limiter = limiter
        self.verified_count = 0
        self.failed_count = 0

    @staticmethod
    def _cache_key(org_name: Optional[str], registry_id: Optional[str]) -> str:
        if registry_id:
            return f"ein:{re.sub(r'[^0-9a-z]', '', registry_id.lower())}"
        return f"name:{(org_name or '').strip().lower()}"

    async def verify(self, org_name: Optional[str] = None, registry_id: Optional[str] = None) -> VerificationResult:
        if not org_name and not registry_id:
            return VerificationResult.failed("no organization name or registry id")

        key = self._cache_key(org_name, registry_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            if self.limiter is not None:
                await self.limiter.acquire()
            result = await self.registry.verify(org_name=org_name, registry_id=registry_id)
        except VerificationError as e:
            logger.warning("Registry verification failed", org_name=org_name, registry_id=registry_id, error=str(e))
            result = VerificationResult.failed(str(e), org_name=org_name, registry_id=registry_id)
        except Exception as e:
            logger.error(
                "Unexpected registry verification error", org_name=org_name, registry_id=registry_id, error=str(e)
            )
            result = VerificationResult.failed(str(e), org_name=org_name, registry_id=registry_id)

        if result.verified:
            self.verified_count += 1
        else:
            self.failed_count += 1
        self.cache.set(key, result)
        return result

    def get_stats(self) -> Dict[str, Any]:
        total = self.verified_count + self.failed_count
        return {
            "verified": self.verified_count,
            "failed": self.failed_count,
            "verification_rate": self.verified_count / total if total else 0.0,
            "cache": self.cache.get_stats(),
        }
