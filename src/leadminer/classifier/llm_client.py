"""
OpenAI-compatible HTTP adapters for relevance judgments and embeddings.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

import httpx
import numpy as np
import structlog
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from leadminer.config.config import ClassifierConfig, DedupConfig
from leadminer.exceptions import BudgetExceededError, ClassificationError, EmbeddingError
from leadminer.limits import BudgetGuard, TokenBucketLimiter
from leadminer.protocols import LexicalSignals, RelevanceJudgment
from leadminer.utils.http import build_client, is_transient

logger = structlog.get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")

SYSTEM_PROMPT = """You are a precise classifier for nonprofit travel auction events.
Identify nonprofits that are themselves running a fundraising event with travel
packages (trips, vacations, cruises, getaways) offered as auction or raffle items.

Classify as NOT relevant:
- Companies that sell or donate travel packages to nonprofits (B2B providers)
- Travel agencies, tour operators and vacation rental companies
- Auction service providers and fundraising platforms
- Political organizations, campaigns and government entities

Respond with JSON only:
{"relevant": true|false, "confidence": 0.0-1.0, "rationale": "<one sentence>"}"""


def strip_markdown_fences(content: str) -> str:
    """Extract the body of a ```json fenced block, or return the trimmed text."""
    match = _FENCE_RE.search(content)
    if match and match.group(1):
        return match.group(1).strip()
    return content.strip()


class JudgmentPayload(BaseModel):
    """Shape of the JSON object the model is asked to return."""

    relevant: bool = Field(validation_alias=AliasChoices("relevant", "is_relevant", "isRelevant"))
    confidence: float = Field(
        ge=0.0, le=1.0, validation_alias=AliasChoices("confidence", "confidence_score", "confidenceScore")
    )
    rationale: str = Field(default="", validation_alias=AliasChoices("rationale", "reasoning"))


def parse_judgment(content: str) -> RelevanceJudgment:
    """Parse a model response into a judgment. Raises ClassificationError when malformed."""
    try:
        payload = JudgmentPayload.model_validate(json.loads(strip_markdown_fences(content)))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise ClassificationError(f"Malformed classification response: {e}") from e
    return RelevanceJudgment(relevant=payload.relevant, confidence=payload.confidence, rationale=payload.rationale)


def build_user_message(text: str, signals: LexicalSignals, max_chars: int = 2000) -> str:
    return (
        f"CONTENT:\n{text[:max_chars]}\n\n"
        f"AUCTION TERMS: {', '.join(signals.auction) or 'none'}\n"
        f"TRAVEL TERMS: {', '.join(signals.travel) or 'none'}\n"
        f"NONPROFIT TERMS: {', '.join(signals.nonprofit) or 'none'}\n"
        f"EXCLUSION TERMS: {', '.join(signals.exclusions) or 'none'}"
    )


class OpenAIClassifier:
    """Relevance judgments from a chat-completions endpoint."""

    def __init__(self, config: ClassifierConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key is not None:
            headers["Authorization"] = f"Bearer {config.api_key.get_secret_value()}"
        self._owns_client = client is None
        self._client = client or build_client(timeout=config.timeout_seconds, headers=headers)
        self._headers = headers

    async def classify_text(self, text: str, signals: LexicalSignals) -> RelevanceJudgment:
        body = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "max_tokens": 300,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_message(text, signals)},
            ],
        }
        try:
            data = await self._post(body)
        except httpx.HTTPError as e:
            raise ClassificationError(f"Classification request failed: {e}") from e
        except ValueError as e:
            raise ClassificationError(f"Classification response is not JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ClassificationError(f"Unexpected classification response shape: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise ClassificationError("Empty classification response")
        return parse_judgment(content)

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        @retry(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )
        async def _send() -> Dict[str, Any]:
            response = await self._client.post(
                f"{self.config.api_base.rstrip('/')}/chat/completions", json=body, headers=self._headers
            )
            response.raise_for_status()
            return response.json()

        return await _send()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenAIEmbedder:
    """Embedding vectors from an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        dedup_config: DedupConfig,
        classifier_config: ClassifierConfig,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        budget: Optional[BudgetGuard] = None,
    ):
        self.limiter = limiter
        self.budget = budget
        self.dim = dedup_config.embedding_dim
        self.model = dedup_config.embedding_model
        self.api_base = classifier_config.api_base.rstrip("/")
        self.max_retries = classifier_config.max_retries
        headers = {"Content-Type": "application/json"}
        if classifier_config.api_key is not None:
            headers["Authorization"] = f"Bearer {classifier_config.api_key.get_secret_value()}"
        self._headers = headers
        self._owns_client = client is None
        self._client = client or build_client(timeout=classifier_config.timeout_seconds, headers=headers)

    async def embed(self, text: str) -> np.ndarray:
        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )
        async def _send() -> Dict[str, Any]:
            response = await self._client.post(
                f"{self.api_base}/embeddings",
                json={"model": self.model, "input": text, "dimensions": self.dim},
                headers=self._headers,
            )
            response.raise_for_status()
            return response.json()

        try:
            if self.budget is not None:
                self.budget.reserve("embedding")
            if self.limiter is not None:
                await self.limiter.acquire()
            data = await _send()
            values: List[float] = data["data"][0]["embedding"]
        except BudgetExceededError as e:
            raise EmbeddingError(str(e)) from e
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise EmbeddingError(f"Unexpected embedding response shape: {e}") from e

        vector = np.asarray(values, dtype=np.float32)
        if vector.shape != (self.dim,):
            raise EmbeddingError(f"Expected {self.dim}-dim embedding, got shape {vector.shape}")
        return vector

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
