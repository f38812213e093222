"""Unit tests for heap snapshot export and loading."""

from __future__ import annotations

import re
import tracemalloc
from pathlib import Path

import pytest

from leakwatch.heap_snapshot import (
    SNAPSHOT_SUFFIX,
    HeapSnapshotExporter,
    sanitize_test_id,
    snapshot_filename,
    top_allocations,
)


@pytest.fixture
def tracing():
    started = not tracemalloc.is_tracing()
    if started:
        tracemalloc.start()
    yield
    if started:
        tracemalloc.stop()


def test_sanitize_test_id() -> None:
    assert sanitize_test_id("tests/test_a.py > TestX::test_y[1-2]") == "tests_test_a_py___TestX__test_y_1-2_"
    assert re.fullmatch(r"[A-Za-z0-9_-]*", sanitize_test_id("ünïcode / spaces\tand\nnewlines"))


def test_snapshot_filename() -> None:
    assert snapshot_filename("f.py > t", 1700000000123) == f"heap-f_py___t-1700000000123{SNAPSHOT_SUFFIX}"


def test_ensure_directory_creates(tmp_path: Path) -> None:
    exporter = HeapSnapshotExporter(tmp_path / "a" / "b")
    assert exporter.ensure_directory() is True
    assert exporter.directory.is_dir()


def test_ensure_directory_failure_logged(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    assert HeapSnapshotExporter(blocker / "snaps").ensure_directory() is False


def test_export_without_tracing_returns_none(tmp_path: Path) -> None:
    if tracemalloc.is_tracing():
        pytest.skip("allocation tracing already active in this process")
    assert HeapSnapshotExporter(tmp_path).export("f.py > t") is None
    assert list(tmp_path.iterdir()) == []


def test_export_and_load_top_allocations(tmp_path: Path, tracing) -> None:
    retained = [bytearray(4096) for _ in range(50)]
    path = HeapSnapshotExporter(tmp_path / "snaps").export("f.py > leaky")
    assert path is not None
    assert path.exists()
    assert path.name.startswith("heap-f_py___leaky-")
    assert path.suffix == SNAPSHOT_SUFFIX

    stats = top_allocations(path, limit=3)
    assert 0 < len(stats) <= 3
    location, size, count = stats[0]
    assert ":" in location
    assert size > 0 and count > 0
    del retained


def test_top_allocations_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        top_allocations(tmp_path / "absent.tracemalloc")
