"""
Key normalization for exact-match deduplication.

Every exact layer of the fingerprint store compares canonical keys rather
than raw strings:

- URLs lose tracking parameters, fragments, case and a trailing slash
- Organization names lose punctuation, legal-form suffixes and extra spaces
- Content is reduced to a fixed embedding text and hashed with SHA-256
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

import structlog

from leadminer.config.config import DEFAULT_TRACKING_PARAMS
from leadminer.protocols import Candidate

logger = structlog.get_logger(__name__)

ORG_SUFFIXES = frozenset(
    {
        "inc",
        "incorporated",
        "corp",
        "corporation",
        "llc",
        "ltd",
        "limited",
        "foundation",
        "fund",
        "trust",
        "society",
        "association",
        "org",
        "organization",
        "nonprofit",
        "non-profit",
    }
)

_WHITESPACE_RE = re.compile(r"\s+")
# Hyphens survive so "non-profit" can be matched as a suffix word.
_ORG_PUNCT_RE = re.compile(r"[^\w\s-]")


def normalize_url(url: str, tracking_params: Optional[Iterable[str]] = None) -> str:
    """
    Canonical form of a URL for exact matching.

    Returns ``scheme://host/path[?query]`` lower-cased, with tracking
    parameters and the fragment removed and any trailing slash stripped from
    paths longer than "/". Unparseable input is lower-cased and stripped.
    """
    raw = (url or "").strip()
    params = {p.lower() for p in (tracking_params if tracking_params is not None else DEFAULT_TRACKING_PARAMS)}
    try:
        parts = urlsplit(raw)
        if not parts.scheme or not parts.netloc:
            return raw.lower()
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k.lower() not in params]
        path = parts.path
        if len(path) > 1 and path.endswith("/"):
            path = path.rstrip("/") or "/"
        normalized = f"{parts.scheme}://{parts.netloc}{path}"
        if query:
            normalized += "?" + urlencode(query)
        return normalized.lower()
    except ValueError as e:
        logger.debug("URL normalization failed", url=raw, error=str(e))
        return raw.lower()


def normalize_org_name(name: Optional[str]) -> Optional[str]:
    """
    Canonical organization name, or None when nothing identifying remains.

    "Lincoln Elementary P.T.A." and "lincoln elementary pta" normalize to the
    same key.
    """
    if not name:
        return None
    lowered = _ORG_PUNCT_RE.sub("", name.lower())
    words = [w for w in _WHITESPACE_RE.split(lowered) if w and w not in ORG_SUFFIXES]
    normalized = " ".join(words).strip()
    return normalized or None


def compose_embedding_text(candidate: Candidate, excerpt_chars: int = 500) -> str:
    """Fixed textual projection of a candidate used for embedding and hashing."""
    excerpt = _WHITESPACE_RE.sub(" ", candidate.text or "").strip()[:excerpt_chars]
    parts = [
        ("Organization", candidate.org_name),
        ("Event", candidate.event_title),
        ("Date", candidate.event_date),
        ("Title", candidate.title),
        ("Content", excerpt),
    ]
    return " | ".join(f"{label}: {value.strip()}" for label, value in parts if value and value.strip())


def content_signature(text: str) -> str:
    """SHA-256 hex digest of the normalized embedding text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_registry_id(registry_id: Optional[str]) -> Optional[str]:
    """EIN-style identifier with separators removed, e.g. "12-3456789" -> "123456789"."""
    if not registry_id:
        return None
    cleaned = re.sub(r"[\s\-]", "", str(registry_id)).lower()
    return cleaned or None
