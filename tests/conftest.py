"""Pytest fixtures for leakwatch tests.

Process state is replaced by fakes: a memory reader, globals reader and
resource counters whose values tests set directly between captures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

from leakwatch.models import MemoryUsage, Snapshot
from leakwatch.snapshot import SnapshotCapturer

pytest_plugins = ["pytester"]

MB = 1024 * 1024


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMemoryReader:
    def __init__(self, heap_used: int = 100 * MB) -> None:
        self.heap_used = heap_used

    def read(self) -> MemoryUsage:
        return MemoryUsage(
            rss=self.heap_used * 2,
            heap_used=self.heap_used,
            heap_total=self.heap_used * 2,
            external=0,
            timestamp=0.0,
        )


class FakeGlobalsReader:
    def __init__(self, names: set[str] | None = None) -> None:
        self.names_set = set(names or {"print", "len"})

    def names(self) -> frozenset[str]:
        return frozenset(self.names_set)


class FakeCounter:
    def __init__(self, value: int = 0) -> None:
        self.value = value

    def count(self) -> int:
        return self.value


@dataclass
class FakeProcess:
    """Bundle of fakes wired into one SnapshotCapturer."""

    memory: FakeMemoryReader = field(default_factory=FakeMemoryReader)
    globals: FakeGlobalsReader = field(default_factory=FakeGlobalsReader)
    timers: FakeCounter = field(default_factory=FakeCounter)
    listeners: FakeCounter = field(default_factory=FakeCounter)
    clock: FakeClock = field(default_factory=FakeClock)

    def capturer(self) -> SnapshotCapturer:
        return SnapshotCapturer(
            globals_reader=self.globals,
            timer_counter=self.timers,
            listener_counter=self.listeners,
            memory_reader=self.memory,
            clock=self.clock,
        )


@pytest.fixture(autouse=True)
def _no_leakwatch_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Profile selection must not leak in from the developer's shell."""
    monkeypatch.delenv("LEAKWATCH_ENV", raising=False)


@pytest.fixture
def fake_process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture
def make_snapshot() -> Callable[..., Snapshot]:
    """Factory for Snapshots with explicit values (heap in bytes)."""

    def _make(
        heap_used: int | None = 100 * MB,
        globals_: set[str] | None = None,
        timers: int | None = 0,
        listeners: int | None = 0,
        timestamp: float = 0.0,
    ) -> Snapshot:
        memory = None
        if heap_used is not None:
            memory = MemoryUsage(rss=heap_used, heap_used=heap_used, heap_total=heap_used, external=0, timestamp=timestamp)
        return Snapshot(
            memory=memory,
            global_keys=frozenset(globals_ if globals_ is not None else {"print"}),
            timer_count=timers,
            listener_count=listeners,
            timestamp=timestamp,
        )

    return _make


@pytest.fixture
def tmp_config_file(tmp_path: Path) -> Path:
    """Minimal valid YAML config with both sections."""
    content = """
environment: ci
leak_detection:
  memory_threshold_mb: 10
  heap_growth_threshold: 0.5
  track_timers: false
  exclude_patterns:
    - "slow_"
  log_file: null
flaky:
  history_file: history/flaky.json
  max_history_runs: 5
  flaky_threshold: 0.3
"""
    p = tmp_path / "leakwatch.yaml"
    p.write_text(content, encoding="utf-8")
    return p


@pytest.fixture
def history_file(tmp_path: Path) -> Path:
    return tmp_path / "reports" / "flaky-test-history.json"
