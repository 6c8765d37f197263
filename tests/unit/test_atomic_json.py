"""Unit tests for atomic JSON operations."""

import asyncio
import json
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from leadminer.utils.atomic import _remove_stale_atomic_files, atomic_json_dump, atomic_write_text


@pytest.mark.asyncio
async def test_atomic_json_dump_success(tmp_path: Path):
    """Successful dump leaves only the target file behind."""
    target_path = tmp_path / "run_abc.json"
    test_data = {"run_id": "abc", "leads_admitted": 3, "stats": {"queries": 5}}

    assert await atomic_json_dump(test_data, target_path) is True

    assert json.loads(target_path.read_text()) == test_data
    assert [p.name for p in tmp_path.iterdir()] == ["run_abc.json"]


@pytest.mark.asyncio
async def test_atomic_json_dump_serializes_datetimes_as_text(tmp_path: Path):
    target_path = tmp_path / "summary.json"
    started = datetime(2025, 6, 1, tzinfo=timezone.utc)

    assert await atomic_json_dump({"started_at": started}, target_path) is True
    assert json.loads(target_path.read_text())["started_at"] == str(started)


@pytest.mark.asyncio
async def test_atomic_json_dump_timeout(tmp_path: Path):
    """A write that outlives the timeout reports failure."""
    target_path = tmp_path / "slow.json"

    def slow_write(path, content, encoding="utf-8"):
        time.sleep(0.3)

    with patch("leadminer.utils.atomic._write_replace", side_effect=slow_write):
        assert await atomic_json_dump({"will": "timeout"}, target_path, timeout=0.05) is False

    assert not target_path.exists()


@pytest.mark.asyncio
async def test_atomic_json_dump_unserializable(tmp_path: Path):
    """Circular structures fail serialization without touching disk."""
    target_path = tmp_path / "invalid.json"
    data: dict = {}
    data["self"] = data

    assert await atomic_json_dump(data, target_path) is False
    assert not any(tmp_path.iterdir())


@pytest.mark.asyncio
async def test_atomic_json_dump_creates_directories(tmp_path: Path):
    target_path = tmp_path / "nested" / "runs" / "run_1.json"
    assert await atomic_json_dump({"nested": True}, target_path) is True
    assert json.loads(target_path.read_text()) == {"nested": True}


@pytest.mark.asyncio
async def test_atomic_json_dump_os_error(tmp_path: Path):
    with patch("leadminer.utils.atomic._write_replace", side_effect=PermissionError("read-only")):
        assert await atomic_json_dump({"x": 1}, tmp_path / "x.json") is False


@pytest.mark.asyncio
async def test_atomic_json_dump_concurrent_writes(tmp_path: Path):
    """Concurrent writes to different files all succeed."""
    tasks = [atomic_json_dump({"index": i}, tmp_path / f"concurrent_{i}.json") for i in range(5)]
    assert await asyncio.gather(*tasks) == [True] * 5
    for i in range(5):
        assert json.loads((tmp_path / f"concurrent_{i}.json").read_text()) == {"index": i}


def test_atomic_write_text_overwrites(tmp_path: Path):
    target_path = tmp_path / "report.csv"
    atomic_write_text(target_path, "old")
    atomic_write_text(target_path, "Type,Severity,Message,Timestamp")
    assert target_path.read_text() == "Type,Severity,Message,Timestamp"


def test_remove_stale_atomic_files(tmp_path: Path):
    """Only temp files older than an hour are removed."""
    stale = tmp_path / ".atomic_summary.json.1.tmp"
    fresh = tmp_path / ".atomic_summary.json.2.tmp"
    other = tmp_path / "summary.json"
    for path in (stale, fresh, other):
        path.write_text("{}")
    old = time.time() - 7200
    os.utime(stale, (old, old))

    _remove_stale_atomic_files(tmp_path)

    assert not stale.exists()
    assert fresh.exists()
    assert other.exists()
