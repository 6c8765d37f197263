"""
Nearest-neighbour index over admitted candidate vectors.

Two backends share one interface:

- ``flat``: a growing numpy matrix scanned with a normalized dot product
- ``faiss``: ``faiss.IndexFlatIP`` for larger corpora (requires faiss-cpu)
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

import numpy as np
import structlog

logger = structlog.get_logger(__name__)


def _normalize(vector: np.ndarray) -> Optional[np.ndarray]:
    """Unit-length float32 copy, or None for a zero vector."""
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(v))
    if norm == 0.0 or not np.isfinite(norm):
        return None
    return v / norm


class SimilarityIndex:
    """
    Cosine-similarity index keyed by record id.

    Ties on score resolve to the earliest-added record. Zero vectors are
    never stored and never match.
    """

    def __init__(self, dim: int, backend: str = "flat"):
        if backend not in ("flat", "faiss"):
            raise ValueError(f"Unknown similarity backend: {backend}")
        self.dim = dim
        self.backend = backend
        self._ids: List[str] = []
        self._matrix = np.zeros((0, dim), dtype=np.float32)
        self._faiss: Any = None
        if backend == "faiss":
            import faiss  # requires faiss-cpu

            self._faiss = faiss.IndexFlatIP(dim)

        logger.info("Initialized SimilarityIndex", dim=dim, backend=backend)

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, record_id: str, vector: np.ndarray) -> bool:
        """Store a vector. Returns False when the vector is zero and was skipped."""
        v = _normalize(vector)
        if v is None:
            logger.debug("Skipping zero vector", record_id=record_id)
            return False
        if v.shape[0] != self.dim:
            raise ValueError(f"Vector has dimension {v.shape[0]}, index expects {self.dim}")
        self._ids.append(record_id)
        if self._faiss is not None:
            self._faiss.add(v.reshape(1, -1))
        else:
            self._matrix = np.vstack([self._matrix, v.reshape(1, -1)])
        return True

    def search(self, vector: np.ndarray, k: int = 1) -> List[Tuple[str, float]]:
        """Top-k (record_id, cosine) pairs, best first."""
        if not self._ids or k <= 0:
            return []
        v = _normalize(vector)
        if v is None:
            return []
        if v.shape[0] != self.dim:
            raise ValueError(f"Vector has dimension {v.shape[0]}, index expects {self.dim}")
        k = min(k, len(self._ids))

        if self._faiss is not None:
            scores, positions = self._faiss.search(v.reshape(1, -1), k)
            return [(self._ids[int(p)], float(s)) for s, p in zip(scores[0], positions[0]) if p >= 0]

        scores = self._matrix @ v
        # Stable sort keeps insertion order among equal scores.
        order = np.argsort(-scores, kind="stable")[:k]
        return [(self._ids[int(i)], float(scores[int(i)])) for i in order]

    def best_match(self, vector: np.ndarray) -> Optional[Tuple[str, float]]:
        hits = self.search(vector, k=1)
        return hits[0] if hits else None

    def clear(self) -> None:
        self._ids.clear()
        self._matrix = np.zeros((0, self.dim), dtype=np.float32)
        if self._faiss is not None:
            self._faiss.reset()
