"""
Shared httpx client construction and retry predicates for the API adapters.
"""

from __future__ import annotations

from typing import Dict, Optional

import httpx

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying: transport failures and 408/429/5xx responses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def build_client(
    timeout: float = 10.0,
    headers: Optional[Dict[str, str]] = None,
    max_connections: int = 10,
) -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    return httpx.AsyncClient(
        limits=limits,
        timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        headers=headers,
        follow_redirects=True,
    )
