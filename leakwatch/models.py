"""Data models for leakwatch.

Snapshots and leak reports are frozen: once captured or emitted they are never
mutated. TestMetrics is the only mutable record and is owned by the detector.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

BYTES_PER_MB = 1024 * 1024


class LeakType(str, Enum):
    """Closed set of leak categories."""

    MEMORY_LEAK = "MEMORY_LEAK"
    MEMORY_GROWTH = "MEMORY_GROWTH"
    GLOBAL_VARIABLE_LEAK = "GLOBAL_VARIABLE_LEAK"
    TIMER_LEAK = "TIMER_LEAK"
    EVENT_LISTENER_LEAK = "EVENT_LISTENER_LEAK"


class Severity(str, Enum):
    """Ordinal severity of a leak report."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class TrackingState(str, Enum):
    """Lifecycle of a tracked test. Unstarted tests have no record at all."""

    IN_FLIGHT = "in-flight"
    FINALIZED = "finalized"


@dataclass(frozen=True, slots=True)
class MemoryUsage:
    """Process memory at a point in time. All sizes in bytes."""

    rss: int
    heap_used: int
    heap_total: int
    external: int
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "rss": self.rss,
            "heap_used": self.heap_used,
            "heap_total": self.heap_total,
            "external": self.external,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryUsage:
        return cls(
            rss=int(data["rss"]),
            heap_used=int(data["heap_used"]),
            heap_total=int(data["heap_total"]),
            external=int(data["external"]),
            timestamp=float(data["timestamp"]),
        )


@dataclass(frozen=True, slots=True)
class ResourceCount:
    """Approximate count of a resource category (timers, listeners)."""

    count: int
    timestamp: float


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable point-in-time capture of memory, global names, timers and listeners.

    A field set to None was not captured; the analyzer skips that category.
    """

    memory: MemoryUsage | None
    global_keys: frozenset[str] | None
    timer_count: int | None
    listener_count: int | None
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory": self.memory.to_dict() if self.memory is not None else None,
            "global_count": len(self.global_keys) if self.global_keys is not None else None,
            "timer_count": self.timer_count,
            "listener_count": self.listener_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        """Rebuild from to_dict() output. Global names are not carried, only their count."""
        memory = data.get("memory")
        return cls(
            memory=MemoryUsage.from_dict(memory) if memory is not None else None,
            global_keys=None,
            timer_count=data.get("timer_count"),
            listener_count=data.get("listener_count"),
            timestamp=float(data.get("timestamp") or 0.0),
        )


@dataclass(frozen=True, slots=True)
class LeakReport:
    """A typed, severity-tagged finding for one resource category."""

    type: LeakType
    severity: Severity
    message: str
    details: dict[str, Any]
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": dict(self.details),
            "recommendation": self.recommendation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LeakReport:
        return cls(
            type=LeakType(data["type"]),
            severity=Severity(data["severity"]),
            message=data["message"],
            details=dict(data.get("details") or {}),
            recommendation=data.get("recommendation") or "",
        )


@dataclass(slots=True)
class TestMetrics:
    """Tracking record for one test case, from start_test to finish_test."""

    __test__ = False  # not a pytest test class

    test_name: str
    test_file: str
    test_id: str
    start_time: float
    initial_snapshot: Snapshot
    end_time: float | None = None
    status: str | None = None
    final_snapshot: Snapshot | None = None
    leaks_detected: list[LeakReport] = field(default_factory=list)
    warnings: list[LeakReport] = field(default_factory=list)
    finish_count: int = 0

    @property
    def state(self) -> TrackingState:
        return TrackingState.IN_FLIGHT if self.final_snapshot is None else TrackingState.FINALIZED

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000.0

    @property
    def memory_delta_bytes(self) -> int | None:
        """Heap growth between the two snapshots, None while in flight."""
        if self.final_snapshot is None:
            return None
        initial, final = self.initial_snapshot.memory, self.final_snapshot.memory
        if initial is None or final is None:
            return None
        return final.heap_used - initial.heap_used

    @property
    def memory_delta_mb(self) -> float | None:
        delta = self.memory_delta_bytes
        return None if delta is None else delta / BYTES_PER_MB

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "test_name": self.test_name,
            "test_file": self.test_file,
            "state": self.state.value,
            "status": self.status,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "memory_delta_bytes": self.memory_delta_bytes,
            "initial_snapshot": self.initial_snapshot.to_dict(),
            "final_snapshot": self.final_snapshot.to_dict() if self.final_snapshot else None,
            "leaks_detected": [r.to_dict() for r in self.leaks_detected],
            "warnings": [r.to_dict() for r in self.warnings],
            "finish_count": self.finish_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestMetrics:
        """Rebuild a record shipped between processes as to_dict() output."""
        final = data.get("final_snapshot")
        return cls(
            test_name=data["test_name"],
            test_file=data["test_file"],
            test_id=data["test_id"],
            start_time=float(data["start_time"]),
            initial_snapshot=Snapshot.from_dict(data["initial_snapshot"]),
            end_time=data.get("end_time"),
            status=data.get("status"),
            final_snapshot=Snapshot.from_dict(final) if final is not None else None,
            leaks_detected=[LeakReport.from_dict(r) for r in data.get("leaks_detected", [])],
            warnings=[LeakReport.from_dict(r) for r in data.get("warnings", [])],
            finish_count=int(data.get("finish_count") or 0),
        )


@dataclass(slots=True)
class WorstOffender:
    """One entry of the ranked worst-offenders list."""

    test: str
    leak_count: int
    memory_impact_mb: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test": self.test,
            "leak_count": self.leak_count,
            "memory_impact_mb": (
                round(self.memory_impact_mb, 2) if self.memory_impact_mb is not None else None
            ),
        }


@dataclass(slots=True)
class LeakSummary:
    """Run-wide aggregation over every tracked test. Recomputed on demand."""

    total_tests: int
    tests_with_leaks: int
    tests_with_warnings: int
    total_leaks: int
    total_warnings: int
    leak_type_breakdown: dict[str, int] = field(default_factory=dict)
    worst_offenders: list[WorstOffender] = field(default_factory=list)
    duration_p50_ms: float = 0.0
    duration_p95_ms: float = 0.0

    @property
    def has_findings(self) -> bool:
        return self.total_leaks > 0 or self.total_warnings > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tests": self.total_tests,
            "tests_with_leaks": self.tests_with_leaks,
            "tests_with_warnings": self.tests_with_warnings,
            "total_leaks": self.total_leaks,
            "total_warnings": self.total_warnings,
            "leak_type_breakdown": dict(self.leak_type_breakdown),
            "worst_offenders": [o.to_dict() for o in self.worst_offenders],
            "duration_p50_ms": round(self.duration_p50_ms, 2),
            "duration_p95_ms": round(self.duration_p95_ms, 2),
        }


# --- Flaky tracking ---

@dataclass(slots=True)
class FlakyRun:
    """One recorded outcome of a test. Serialized as-is into the history file."""

    timestamp: str
    status: str
    duration: float
    retries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status,
            "duration": self.duration,
            "retries": self.retries,
        }


@dataclass(slots=True)
class FlakyTestAnalysis:
    """Flakiness statistics of one test over its trailing window."""

    test_name: str
    failure_rate: int  # percent, rounded half up
    total_runs: int
    failures: int
    passes: int
    average_duration: int  # ms, rounded half up
    last_failure: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_name": self.test_name,
            "failure_rate": self.failure_rate,
            "total_runs": self.total_runs,
            "failures": self.failures,
            "passes": self.passes,
            "average_duration": self.average_duration,
            "last_failure": self.last_failure,
        }


# --- Configuration ---

@dataclass(slots=True)
class LeakDetectionConfig:
    """Thresholds and switches for the leak detector."""

    memory_threshold_mb: float = 50.0
    heap_growth_threshold: float = 0.2
    track_event_listeners: bool = True
    track_timers: bool = True
    track_globals: bool = True
    generate_heap_snapshots: bool = False
    heap_snapshot_dir: str = "./reports/heap-snapshots"
    log_file: str | None = "leak-detection.log"
    verbose: bool = False
    exclude_patterns: list[str] = field(default_factory=list)
    global_scope: str = "builtins"  # "builtins" | "main"
    trace_allocations: bool = False


@dataclass(slots=True)
class FlakyConfig:
    """Persistence and classification settings for the flaky tracker."""

    history_file: str = "reports/flaky-test-history.json"
    max_history_runs: int = 50
    flaky_threshold: float = 0.2
    window_size: int = 20
    min_runs: int = 3


@dataclass(slots=True)
class LeakwatchConfig:
    """Effective configuration after profile and file merging."""

    leak: LeakDetectionConfig = field(default_factory=LeakDetectionConfig)
    flaky: FlakyConfig = field(default_factory=FlakyConfig)
    environment: str = "test"
    source_path: str | None = None
