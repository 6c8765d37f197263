"""
Deterministic offline embedder based on feature hashing.
"""

from __future__ import annotations

import hashlib
import re
from typing import List

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class HashingEmbedder:
    """
    Hashes word unigrams and bigrams into ``dim`` signed buckets.

    Lexically near-identical texts land close together in cosine space, which
    is what syndicated copies of the same event page look like. Needs no
    network and produces identical vectors across processes.
    """

    def __init__(self, dim: int = 1536):
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim

    def _features(self, text: str) -> List[str]:
        tokens = _TOKEN_RE.findall(text.lower())
        bigrams = [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        return tokens + bigrams

    def embed_sync(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        for feature in self._features(text):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "little")
            sign = 1.0 if value & 1 else -1.0
            vector[(value >> 1) % self.dim] += sign
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    async def embed(self, text: str) -> np.ndarray:
        return self.embed_sync(text)
