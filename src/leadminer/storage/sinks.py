"""
Append-only JSONL sinks for admitted leads and review items.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Sequence

import aiofiles
import structlog

from leadminer.protocols import Lead, ReviewItem

logger = structlog.get_logger(__name__)


class _JsonlWriter:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self.records_written = 0

    async def _append(self, records: Sequence[Dict[str, Any]]) -> int:
        if not records:
            return 0
        lines = "".join(json.dumps(r, ensure_ascii=False, default=str) + "\n" for r in records)
        async with self._lock:
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(lines)
        self.records_written += len(records)
        return len(records)

    async def read_all(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            content = await f.read()
        return [json.loads(line) for line in content.splitlines() if line.strip()]


class JsonlLeadSink(_JsonlWriter):
    """Output sink writing one admitted lead per line."""

    async def write(self, leads: Sequence[Lead]) -> None:
        count = await self._append([lead.to_dict() for lead in leads])
        if count:
            logger.info("Leads written", path=str(self.path), count=count)


class JsonlReviewSink(_JsonlWriter):
    """Review sink writing one pending review item per line."""

    async def submit(self, items: Sequence[ReviewItem]) -> None:
        count = await self._append([item.to_dict() for item in items])
        if count:
            logger.info("Review items submitted", path=str(self.path), count=count)
