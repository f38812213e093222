"""Per-test leak tracking: snapshot at start, snapshot + analysis at finish.

One detector per worker process; hooks are invoked sequentially, at most one
test in flight at a time. Records are kept until cleanup().

A second finish_test for the same id re-captures the final snapshot and
re-runs analysis against the original initial snapshot, replacing the previous
reports (a retried test replaces its record).
"""

from __future__ import annotations

import time
import tracemalloc
from collections import defaultdict
from typing import Callable

from tdigest import TDigest

from .analyzer import analyze
from .config import compile_exclude_patterns
from .heap_snapshot import HeapSnapshotExporter
from .logging_config import get_logger
from .models import (
    BYTES_PER_MB,
    LeakDetectionConfig,
    LeakSummary,
    TestMetrics,
    TrackingState,
    WorstOffender,
)
from .snapshot import SnapshotCapturer, globals_reader_for_scope

logger = get_logger("detector")

WORST_OFFENDERS_LIMIT = 5
REPORT_SEPARATOR = "-" * 80


def make_test_id(test_name: str, test_file: str) -> str:
    """Composite identity: file path then full test name."""
    return f"{test_file} > {test_name}"


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError):
        return 0.0


class LeakDetector:
    """Tracks TestMetrics keyed by composite test id and aggregates a run summary.

    Raises LeakwatchConfigError at construction if an exclude pattern does not compile.
    """

    def __init__(
        self,
        config: LeakDetectionConfig | None = None,
        capturer: SnapshotCapturer | None = None,
        exporter: HeapSnapshotExporter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or LeakDetectionConfig()
        self._capturer = capturer or SnapshotCapturer(
            globals_reader=globals_reader_for_scope(self.config.global_scope),
        )
        self._clock = clock
        self._metrics: dict[str, TestMetrics] = {}
        self._exclude = compile_exclude_patterns(self.config.exclude_patterns)
        self._started_tracing = False

        if self.config.trace_allocations or self.config.generate_heap_snapshots:
            self._start_tracing()

        self._exporter: HeapSnapshotExporter | None = None
        if self.config.generate_heap_snapshots:
            self._exporter = exporter or HeapSnapshotExporter(self.config.heap_snapshot_dir)
            self._exporter.ensure_directory()

    def _start_tracing(self) -> None:
        if tracemalloc.is_tracing():
            return
        tracemalloc.start()
        self._started_tracing = True
        logger.debug("Allocation tracing started")

    @property
    def exclude_patterns(self) -> list[str]:
        return list(self.config.exclude_patterns)

    def is_excluded(self, test_name: str, test_file: str) -> bool:
        """True if any exclude pattern matches the test name or file (patterns compiled as written)."""
        return any(rx.search(test_name) or rx.search(test_file) for rx in self._exclude)

    def get_metrics(self, test_id: str) -> TestMetrics | None:
        return self._metrics.get(test_id)

    @property
    def metrics(self) -> list[TestMetrics]:
        """All tracked records, in start order."""
        return list(self._metrics.values())

    def add_metrics(self, records: list[TestMetrics]) -> None:
        """Merge records tracked by another process (e.g. an xdist worker) into this summary."""
        for m in records:
            self._metrics[m.test_id] = m

    def start_test(self, test_name: str, test_file: str) -> str:
        """Open a tracking record and capture the initial snapshot. Returns the test id.

        A record already present under the same id is replaced.
        """
        test_id = make_test_id(test_name, test_file)
        self._metrics[test_id] = TestMetrics(
            test_name=test_name,
            test_file=test_file,
            test_id=test_id,
            start_time=self._clock(),
            initial_snapshot=self._capturer.capture(),
        )
        self._log_verbose("Leak detection started for: %s", test_id)
        return test_id

    def finish_test(self, test_id: str, status: str) -> TestMetrics | None:
        """Capture the final snapshot, analyze, and return the finalized record.

        Returns None (with a warning) if the id was never started or was cleaned up.
        """
        metrics = self._metrics.get(test_id)
        if metrics is None:
            logger.warning("No metrics found for test %s", test_id)
            return None

        if metrics.state is TrackingState.FINALIZED:
            logger.debug("Re-analyzing already finalized test %s", test_id)

        metrics.final_snapshot = self._capturer.capture()
        metrics.end_time = self._clock()
        metrics.status = status
        metrics.finish_count += 1

        result = analyze(metrics.initial_snapshot, metrics.final_snapshot, self.config)
        metrics.leaks_detected = result.leaks
        metrics.warnings = result.warnings

        if metrics.leaks_detected and self._exporter is not None:
            self._exporter.export(test_id)

        if metrics.leaks_detected or metrics.warnings:
            self._report_leaks(metrics)
        return metrics

    def get_summary(self) -> LeakSummary:
        """Aggregate every record currently held. Does not mutate state."""
        all_metrics = list(self._metrics.values())
        with_leaks = [m for m in all_metrics if m.leaks_detected]
        leak_types: dict[str, int] = defaultdict(int)
        digest = TDigest()
        timed = 0
        for m in all_metrics:
            for leak in m.leaks_detected:
                leak_types[leak.type.value] += 1
            if m.duration_ms is not None:
                digest.update(m.duration_ms)
                timed += 1

        ranked = sorted(with_leaks, key=lambda m: len(m.leaks_detected), reverse=True)
        offenders = [
            WorstOffender(
                test=m.test_id,
                leak_count=len(m.leaks_detected),
                memory_impact_mb=m.memory_delta_mb,
            )
            for m in ranked[:WORST_OFFENDERS_LIMIT]
        ]

        return LeakSummary(
            total_tests=len(all_metrics),
            tests_with_leaks=len(with_leaks),
            tests_with_warnings=sum(1 for m in all_metrics if m.warnings),
            total_leaks=sum(len(m.leaks_detected) for m in all_metrics),
            total_warnings=sum(len(m.warnings) for m in all_metrics),
            leak_type_breakdown=dict(leak_types),
            worst_offenders=offenders,
            duration_p50_ms=_percentile_from_digest(digest, 50) if timed else 0.0,
            duration_p95_ms=_percentile_from_digest(digest, 95) if timed else 0.0,
        )

    def cleanup(self) -> None:
        """Drop all records, in-flight ones included."""
        self._metrics.clear()

    def shutdown(self) -> None:
        """cleanup() plus stopping allocation tracing if this detector started it."""
        self.cleanup()
        if self._started_tracing and tracemalloc.is_tracing():
            tracemalloc.stop()
            logger.debug("Allocation tracing stopped")
        self._started_tracing = False

    def _log_verbose(self, msg: str, *args: object) -> None:
        if self.config.verbose:
            logger.info(msg, *args)
        else:
            logger.debug(msg, *args)

    def _report_leaks(self, metrics: TestMetrics) -> None:
        logger.warning("LEAK DETECTION REPORT: %s", metrics.test_id)
        if metrics.leaks_detected:
            logger.error("%d leak(s) detected:", len(metrics.leaks_detected))
            for i, leak in enumerate(metrics.leaks_detected, 1):
                logger.error("  %d. [%s] %s: %s", i, leak.severity.value, leak.type.value, leak.message)
                if self.config.verbose and leak.details:
                    logger.error("     Details: %s", leak.details)
        if metrics.warnings:
            logger.warning("%d warning(s):", len(metrics.warnings))
            for i, warning in enumerate(metrics.warnings, 1):
                logger.warning("  %d. [%s] %s: %s", i, warning.severity.value, warning.type.value, warning.message)
        delta = metrics.memory_delta_bytes
        if delta is not None:
            self._log_verbose("Memory impact: %.2fMB change", delta / BYTES_PER_MB)
        if metrics.duration_ms is not None:
            self._log_verbose("Test duration: %.0fms", metrics.duration_ms)
        self._log_verbose(REPORT_SEPARATOR)
