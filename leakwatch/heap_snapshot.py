"""Heap snapshot export for offline inspection of leaking tests.

Snapshots are tracemalloc dumps, so allocation tracing must be active when a
leak is found. Export is a side effect only: failures are logged, never raised.
"""

from __future__ import annotations

import re
import time
import tracemalloc
from pathlib import Path

from .logging_config import get_logger

logger = get_logger("heap_snapshot")

SNAPSHOT_SUFFIX = ".tracemalloc"
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_test_id(test_id: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return _UNSAFE_CHARS.sub("_", test_id)


def snapshot_filename(test_id: str, timestamp_ms: int) -> str:
    return f"heap-{sanitize_test_id(test_id)}-{timestamp_ms}{SNAPSHOT_SUFFIX}"


class HeapSnapshotExporter:
    """Writes one tracemalloc snapshot per leaking test into a directory."""

    __slots__ = ("_directory",)

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def ensure_directory(self) -> bool:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Error creating heap snapshot directory %s: %s", self._directory, e)
            return False
        return True

    def export(self, test_id: str) -> Path | None:
        """Dump the current allocation snapshot. Returns the file path, or None on failure."""
        if not tracemalloc.is_tracing():
            logger.warning("Heap snapshot skipped for %s: allocation tracing is not active", test_id)
            return None
        path = self._directory / snapshot_filename(test_id, int(time.time() * 1000))
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            tracemalloc.take_snapshot().dump(str(path))
        except (OSError, RuntimeError) as e:
            logger.error("Error generating heap snapshot: %s", e)
            return None
        logger.info("Heap snapshot saved: %s", path)
        return path


def top_allocations(path: str | Path, limit: int = 10) -> list[tuple[str, int, int]]:
    """Top allocation sites of a dumped snapshot as (location, size_bytes, count).

    Raises OSError if the file cannot be read.
    """
    snapshot = tracemalloc.Snapshot.load(str(path))
    out: list[tuple[str, int, int]] = []
    for stat in snapshot.statistics("lineno")[:limit]:
        frame = stat.traceback[0]
        out.append((f"{frame.filename}:{frame.lineno}", stat.size, stat.count))
    return out
