"""
Duplicate detection for candidate leads.

Exact-key layers (URL, registry ID, organization name) short-circuit ahead of
a semantic layer backed by an embedder and a cosine similarity index.
"""

from .embedding import HashingEmbedder
from .fingerprint_store import FingerprintStore
from .normalize import (
    compose_embedding_text,
    content_signature,
    normalize_org_name,
    normalize_registry_id,
    normalize_url,
)
from .similarity_index import SimilarityIndex

__all__ = [
    "FingerprintStore",
    "HashingEmbedder",
    "SimilarityIndex",
    "compose_embedding_text",
    "content_signature",
    "normalize_org_name",
    "normalize_registry_id",
    "normalize_url",
]
