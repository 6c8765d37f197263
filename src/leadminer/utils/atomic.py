"""
Atomic file writes for run summaries and exported reports.

Content goes to a temporary file in the target directory and is then moved
into place with ``os.replace``, so readers never observe a half-written file.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

TEMP_PREFIX = ".atomic_"
STALE_AFTER_SECONDS = 3600


def _write_replace(path: Path, content: str, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f"{TEMP_PREFIX}{path.name}.", suffix=".tmp")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink(missing_ok=True)


async def atomic_json_dump(data: Any, path: Path, timeout: float = 2.0) -> bool:
    """
    Write ``data`` as JSON to ``path`` atomically, off the event loop.

    Returns:
        True if the file was written, False on serialization error, I/O
        error or timeout. Never raises.
    """
    path = Path(path)
    try:
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as e:
        logger.warning("Cannot serialize data to JSON", path=str(path), error=str(e))
        return False

    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(loop.run_in_executor(None, _write_replace, path, content), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Atomic write timed out", path=str(path), timeout=timeout)
        return False
    except OSError as e:
        logger.warning("Atomic write failed", path=str(path), error=str(e))
        return False

    _remove_stale_atomic_files(path.parent)
    return True


def atomic_write_text(target_path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Atomically write text content to a file.

    Raises:
        OSError: If the write or the final rename fails.
    """
    _write_replace(Path(target_path), content, encoding)
    logger.debug("Atomic write completed", target=str(target_path))


def _remove_stale_atomic_files(dir_: Path) -> None:
    """Remove temporary files left behind by interrupted writes."""
    now = time.time()
    for temp_file in dir_.glob(f"{TEMP_PREFIX}*"):
        try:
            if temp_file.is_file() and now - temp_file.stat().st_mtime > STALE_AFTER_SECONDS:
                temp_file.unlink()
                logger.debug("Removed stale atomic file", path=str(temp_file))
        except OSError as e:
            logger.debug("Could not remove stale atomic file", path=str(temp_file), error=str(e))
