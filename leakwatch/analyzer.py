"""Leak analysis: diff two Snapshots into typed leak and warning reports.

Four independent checks (memory, globals, timers, listeners). The memory check
always runs; the others are switched by configuration. A check whose inputs
were not captured on either side is skipped. Nothing here raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import BYTES_PER_MB, LeakDetectionConfig, LeakReport, LeakType, Severity, Snapshot

GLOBAL_HIGH_SEVERITY_COUNT = 5
TIMER_HIGH_SEVERITY_COUNT = 5
LISTENER_HIGH_SEVERITY_COUNT = 10
MAX_REPORTED_GLOBALS = 10

RECOMMENDATIONS: dict[LeakType, str] = {
    LeakType.MEMORY_LEAK: (
        "Check for objects retained after the test (module-level caches, closures, "
        "class attributes); use weakref containers for back-references"
    ),
    LeakType.MEMORY_GROWTH: (
        "Monitor memory usage patterns and reduce per-test allocations held in fixtures"
    ),
    LeakType.GLOBAL_VARIABLE_LEAK: (
        "Undo global state in fixture teardown or use monkeypatch so changes are reverted"
    ),
    LeakType.TIMER_LEAK: (
        "Cancel threading.Timer objects, join worker threads and cancel asyncio tasks "
        "before the test ends"
    ),
    LeakType.EVENT_LISTENER_LEAK: (
        "Remove logging handlers and unregister atexit callbacks added during the test"
    ),
}


@dataclass(slots=True)
class AnalysisResult:
    """Reports produced for one pair of snapshots."""

    leaks: list[LeakReport] = field(default_factory=list)
    warnings: list[LeakReport] = field(default_factory=list)


def check_memory(initial: Snapshot, final: Snapshot, config: LeakDetectionConfig) -> LeakReport | None:
    """Absolute heap growth escalates to a leak; otherwise relative growth to a warning."""
    if initial.memory is None or final.memory is None:
        return None
    initial_heap = initial.memory.heap_used
    final_heap = final.memory.heap_used
    delta = final_heap - initial_heap
    delta_mb = delta / BYTES_PER_MB
    # Degenerate baseline: no growth-rate signal
    rate = delta / initial_heap if initial_heap > 0 else None

    if delta_mb > config.memory_threshold_mb:
        return LeakReport(
            type=LeakType.MEMORY_LEAK,
            severity=Severity.HIGH,
            message=f"Memory increased by {delta_mb:.2f}MB (threshold: {config.memory_threshold_mb}MB)",
            details={
                "initial_heap_used": initial_heap,
                "final_heap_used": final_heap,
                "difference": delta,
                "growth_rate": rate,
            },
            recommendation=RECOMMENDATIONS[LeakType.MEMORY_LEAK],
        )
    if rate is not None and rate > config.heap_growth_threshold:
        return LeakReport(
            type=LeakType.MEMORY_GROWTH,
            severity=Severity.MEDIUM,
            message=(
                f"Heap grew by {rate * 100:.1f}% "
                f"(threshold: {config.heap_growth_threshold * 100:g}%)"
            ),
            details={
                "growth_rate": rate,
                "memory_diff_mb": delta_mb,
            },
            recommendation=RECOMMENDATIONS[LeakType.MEMORY_GROWTH],
        )
    return None


def new_globals(initial: frozenset[str], final: frozenset[str]) -> list[str]:
    """Names present at the end that were absent at the start, in sorted order."""
    return sorted(final - initial)


def check_globals(initial: Snapshot, final: Snapshot) -> LeakReport | None:
    if initial.global_keys is None or final.global_keys is None:
        return None
    added = new_globals(initial.global_keys, final.global_keys)
    if not added:
        return None
    return LeakReport(
        type=LeakType.GLOBAL_VARIABLE_LEAK,
        severity=Severity.HIGH if len(added) > GLOBAL_HIGH_SEVERITY_COUNT else Severity.MEDIUM,
        message=f"{len(added)} new global variable(s) detected",
        details={
            "new_globals": added[:MAX_REPORTED_GLOBALS],
            "total_count": len(added),
        },
        recommendation=RECOMMENDATIONS[LeakType.GLOBAL_VARIABLE_LEAK],
    )


def check_timers(initial: Snapshot, final: Snapshot) -> LeakReport | None:
    if initial.timer_count is None or final.timer_count is None:
        return None
    diff = final.timer_count - initial.timer_count
    if diff <= 0:
        return None
    return LeakReport(
        type=LeakType.TIMER_LEAK,
        severity=Severity.HIGH if diff > TIMER_HIGH_SEVERITY_COUNT else Severity.MEDIUM,
        message=f"{diff} timer(s) not cleaned up",
        details={
            "initial_count": initial.timer_count,
            "final_count": final.timer_count,
            "leaked_timers": diff,
        },
        recommendation=RECOMMENDATIONS[LeakType.TIMER_LEAK],
    )


def check_listeners(initial: Snapshot, final: Snapshot) -> LeakReport | None:
    if initial.listener_count is None or final.listener_count is None:
        return None
    diff = final.listener_count - initial.listener_count
    if diff <= 0:
        return None
    return LeakReport(
        type=LeakType.EVENT_LISTENER_LEAK,
        severity=Severity.HIGH if diff > LISTENER_HIGH_SEVERITY_COUNT else Severity.MEDIUM,
        message=f"{diff} event listener(s) not removed",
        details={
            "initial_count": initial.listener_count,
            "final_count": final.listener_count,
            "leaked_listeners": diff,
        },
        recommendation=RECOMMENDATIONS[LeakType.EVENT_LISTENER_LEAK],
    )


def analyze(initial: Snapshot, final: Snapshot | None, config: LeakDetectionConfig) -> AnalysisResult:
    """Run all enabled checks. Warnings are MEMORY_GROWTH only; everything else is a leak."""
    result = AnalysisResult()
    if final is None:
        return result

    memory = check_memory(initial, final, config)
    if memory is not None:
        if memory.type is LeakType.MEMORY_LEAK:
            result.leaks.append(memory)
        else:
            result.warnings.append(memory)

    if config.track_globals:
        report = check_globals(initial, final)
        if report is not None:
            result.leaks.append(report)
    if config.track_timers:
        report = check_timers(initial, final)
        if report is not None:
            result.leaks.append(report)
    if config.track_event_listeners:
        report = check_listeners(initial, final)
        if report is not None:
            result.leaks.append(report)
    return result
