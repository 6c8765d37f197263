"""
SQLite ledger of admitted leads and issued search queries.

Makes runs idempotent: a URL admitted in an earlier run is skipped, a query
already issued is not paid for again, and the fingerprint store can be warmed
from previously admitted leads.

Schema:
- admitted_leads(key TEXT PRIMARY KEY, url, org_name, registry_id, admitted_at REAL, payload JSON)
- issued_queries(key TEXT PRIMARY KEY, query, issued_at REAL, result_count INTEGER)
"""

from __future__ import annotations

import asyncio
import json
import re
import sqlite3
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set

import aiosqlite
import structlog

from leadminer.dedup.normalize import normalize_org_name, normalize_registry_id, normalize_url
from leadminer.protocols import FingerprintRecord, Lead

logger = structlog.get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def query_key(query: str) -> str:
    return _WHITESPACE_RE.sub(" ", query.strip().lower())


class LeadLedger:
    """Persistent, idempotent record of admissions and search spend."""

    def __init__(self, db_path: Path, wal_mode: bool = True, tracking_params: Optional[Sequence[str]] = None):
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.tracking_params = tracking_params

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection_pool: List[aiosqlite.Connection] = []
        self._pool_size = 3
        self._pool_lock = asyncio.Lock()

        self._leads_inserted = 0
        self._leads_updated = 0
        self._queries_recorded = 0

        self._init_database()

    def _init_database(self) -> None:
        """Create the schema synchronously so the ledger is usable immediately."""
        with sqlite3.connect(self.db_path) as conn:
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS admitted_leads (
                    key TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    org_name TEXT,
                    registry_id TEXT,
                    admitted_at REAL NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issued_queries (
                    key TEXT PRIMARY KEY,
                    query TEXT NOT NULL,
                    issued_at REAL NOT NULL,
                    result_count INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_admitted_leads_admitted_at ON admitted_leads(admitted_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_issued_queries_issued_at ON issued_queries(issued_at)")
            conn.commit()
        logger.info("Initialized lead ledger", path=str(self.db_path), wal_mode=self.wal_mode)

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._pool_lock:
            if self._connection_pool:
                conn = self._connection_pool.pop()
            else:
                conn = await aiosqlite.connect(self.db_path)
                if self.wal_mode:
                    await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield conn
        finally:
            async with self._pool_lock:
                if len(self._connection_pool) < self._pool_size:
                    self._connection_pool.append(conn)
                else:
                    await conn.close()

    def lead_key(self, url: str) -> str:
        return normalize_url(url, self.tracking_params)

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def upsert_leads(self, leads: Sequence[Lead], signatures: Optional[Dict[str, str]] = None) -> int:
        """
        Insert or refresh admitted leads in one transaction.

        The first admission time of a key is kept on update. ``signatures``
        maps candidate ids to content signatures stored alongside the lead.

        Returns:
            Number of keys that were not in the ledger before.
        """
        if not leads:
            return 0
        signatures = signatures or {}
        rows = []
        for lead in leads:
            payload = lead.to_dict()
            payload["content_signature"] = signatures.get(lead.candidate_id)
            rows.append(
                (
                    self.lead_key(lead.url),
                    lead.url,
                    lead.organization,
                    lead.registry_id,
                    lead.admitted_at.timestamp(),
                    json.dumps(payload, ensure_ascii=False),
                )
            )

        async with self._get_connection() as conn:
            keys = [r[0] for r in rows]
            placeholders = ",".join("?" for _ in keys)
            cursor = await conn.execute(f"SELECT key FROM admitted_leads WHERE key IN ({placeholders})", keys)
            existing = {row[0] for row in await cursor.fetchall()}
            await conn.executemany(
                """
                INSERT INTO admitted_leads (key, url, org_name, registry_id, admitted_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    url = excluded.url,
                    org_name = excluded.org_name,
                    registry_id = COALESCE(excluded.registry_id, admitted_leads.registry_id),
                    payload = excluded.payload
                """,
                rows,
            )
            await conn.commit()

        new_keys = {k for k in keys if k not in existing}
        self._leads_inserted += len(new_keys)
        self._leads_updated += len(set(keys)) - len(new_keys)
        logger.debug("Ledger upsert", leads=len(rows), new=len(new_keys))
        return len(new_keys)

    async def upsert_lead(self, lead: Lead, content_signature: Optional[str] = None) -> bool:
        signatures = {lead.candidate_id: content_signature} if content_signature else None
        return await self.upsert_leads([lead], signatures) == 1

    async def has_lead(self, url: str) -> bool:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT 1 FROM admitted_leads WHERE key = ?", (self.lead_key(url),))
            return await cursor.fetchone() is not None

    async def admitted_keys(self, urls: Iterable[str]) -> Set[str]:
        """Normalized keys among ``urls`` that are already admitted."""
        keys = list({self.lead_key(u) for u in urls})
        if not keys:
            return set()
        async with self._get_connection() as conn:
            placeholders = ",".join("?" for _ in keys)
            cursor = await conn.execute(f"SELECT key FROM admitted_leads WHERE key IN ({placeholders})", keys)
            return {row[0] for row in await cursor.fetchall()}

    async def get_lead(self, url: str) -> Optional[Dict[str, Any]]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT payload, admitted_at FROM admitted_leads WHERE key = ?", (self.lead_key(url),)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        payload = json.loads(row[0])
        payload["first_admitted_at"] = row[1]
        return payload

    async def load_fingerprints(self) -> List[FingerprintRecord]:
        """Rebuild fingerprint records (without vectors) for every admitted lead."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT key, url, org_name, registry_id, admitted_at, payload FROM admitted_leads ORDER BY admitted_at"
            )
            rows = await cursor.fetchall()

        records = []
        for key, url, org_name, registry_id, _admitted_at, payload_json in rows:
            payload = json.loads(payload_json)
            records.append(
                FingerprintRecord(
                    record_id=payload.get("candidate_id") or key,
                    normalized_url=key,
                    registry_id=normalize_registry_id(registry_id),
                    normalized_org_name=normalize_org_name(org_name),
                    content_signature=payload.get("content_signature") or "",
                    emails=set(payload.get("emails") or ()),
                    phones=set(payload.get("phones") or ()),
                    source_urls=[url],
                )
            )
        return records

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def record_query(self, query: str, result_count: int = 0) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO issued_queries (key, query, issued_at, result_count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    issued_at = excluded.issued_at,
                    result_count = excluded.result_count
                """,
                (query_key(query), query, time.time(), result_count),
            )
            await conn.commit()
        self._queries_recorded += 1

    async def has_query(self, query: str) -> bool:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT 1 FROM issued_queries WHERE key = ?", (query_key(query),))
            return await cursor.fetchone() is not None

    async def filter_new_queries(self, queries: Sequence[str]) -> List[str]:
        """Queries never issued before, deduplicated, in input order."""
        seen: Set[str] = set()
        fresh: List[str] = []
        for query in queries:
            key = query_key(query)
            if not key or key in seen:
                continue
            seen.add(key)
            if not await self.has_query(query):
                fresh.append(query)
        return fresh

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_old(self, days: int = 365) -> int:
        """Delete leads and queries older than ``days``. Returns rows deleted."""
        cutoff = time.time() - days * 24 * 3600
        async with self._get_connection() as conn:
            leads = await conn.execute("DELETE FROM admitted_leads WHERE admitted_at < ?", (cutoff,))
            queries = await conn.execute("DELETE FROM issued_queries WHERE issued_at < ?", (cutoff,))
            await conn.commit()
            deleted = leads.rowcount + queries.rowcount
        logger.info("Ledger cleanup", days=days, deleted=deleted)
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "db_path": str(self.db_path),
            "wal_mode": self.wal_mode,
            "leads_inserted": self._leads_inserted,
            "leads_updated": self._leads_updated,
            "queries_recorded": self._queries_recorded,
        }
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM admitted_leads")
            stats["total_leads"] = (await cursor.fetchone())[0]
            cursor = await conn.execute("SELECT COUNT(*) FROM issued_queries")
            stats["total_queries"] = (await cursor.fetchone())[0]
            cursor = await conn.execute("PRAGMA page_count")
            page_count = (await cursor.fetchone())[0]
            cursor = await conn.execute("PRAGMA page_size")
            page_size = (await cursor.fetchone())[0]
            stats["db_size_bytes"] = page_count * page_size
        return stats

    async def close(self) -> None:
        async with self._pool_lock:
            for conn in self._connection_pool:
                await conn.close()
            self._connection_pool.clear()
        logger.info("Lead ledger connections closed")
