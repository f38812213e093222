"""Flaky test tracking across runs.

History lives in one JSON file mapping test identity to
``{"runs": [{timestamp, status, duration, retries}, ...]}``. It is read once at
construction and fully rewritten by save_history(). Concurrent writers from
separate processes are not coordinated: last writer wins.

Reading never fails the run (missing or corrupt file means empty history) and
neither does writing (errors are logged and swallowed).
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson

from .exceptions import LeakwatchHistoryError
from .logging_config import get_logger
from .models import FlakyConfig, FlakyRun, FlakyTestAnalysis

logger = get_logger("flaky")

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_run(raw: Any) -> FlakyRun | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("status"), str):
        return None
    try:
        return FlakyRun(
            timestamp=str(raw.get("timestamp") or ""),
            status=raw["status"],
            duration=float(raw.get("duration") or 0),
            retries=int(raw.get("retries") or 0),
        )
    except (TypeError, ValueError):
        return None


def parse_history(data: Any) -> dict[str, list[FlakyRun]]:
    """Convert decoded history JSON to run lists, dropping malformed entries.

    Raises LeakwatchHistoryError if the top level is not an object.
    """
    if not isinstance(data, dict):
        raise LeakwatchHistoryError(
            "Flaky history must be a JSON object",
            context={"actual_type": type(data).__name__},
        )
    history: dict[str, list[FlakyRun]] = {}
    dropped = 0
    for test_name, entry in data.items():
        raw_runs = entry.get("runs") if isinstance(entry, dict) else None
        if not isinstance(raw_runs, list):
            dropped += 1
            continue
        runs: list[FlakyRun] = []
        for raw in raw_runs:
            run = _parse_run(raw)
            if run is None:
                dropped += 1
            else:
                runs.append(run)
        history[str(test_name)] = runs
    if dropped:
        logger.warning("Dropped %d malformed flaky history entr%s", dropped, "y" if dropped == 1 else "ies")
    return history


def read_history(path: str | Path) -> dict[str, list[FlakyRun]]:
    """Strict history read. Raises LeakwatchHistoryError if missing, unreadable or corrupt."""
    p = Path(path)
    try:
        data = orjson.loads(p.read_bytes())
    except FileNotFoundError as e:
        raise LeakwatchHistoryError(
            f"Flaky history file not found: {path}", context={"path": str(path)}, original_error=e
        ) from e
    except (OSError, orjson.JSONDecodeError) as e:
        raise LeakwatchHistoryError(
            f"Cannot read flaky history: {e}", context={"path": str(path)}, original_error=e
        ) from e
    return parse_history(data)


def analyze_history(
    history: dict[str, list[FlakyRun]],
    flaky_threshold: float,
    window_size: int = 20,
    min_runs: int = 3,
) -> list[FlakyTestAnalysis]:
    """Classify flaky tests from their trailing windows, sorted by failure rate (desc).

    A test qualifies only with at least ``min_runs`` recorded runs, both passes
    and failures in its trailing window, and a failure rate >= threshold.
    """
    flaky: list[FlakyTestAnalysis] = []
    for test_name, runs in history.items():
        if len(runs) < min_runs:
            continue
        recent = runs[-window_size:]
        total = len(recent)
        failed = [r for r in recent if r.status == STATUS_FAILED]
        has_passes = any(r.status == STATUS_PASSED for r in recent)
        failure_rate = len(failed) / total
        if not (failed and has_passes and failure_rate >= flaky_threshold):
            continue
        flaky.append(
            FlakyTestAnalysis(
                test_name=test_name,
                failure_rate=_round_half_up(failure_rate * 100),
                total_runs=total,
                failures=len(failed),
                passes=total - len(failed),
                average_duration=_round_half_up(sum(r.duration for r in recent) / total),
                last_failure=failed[-1].timestamp or None,
            )
        )
    # stable sort keeps history order among equal rates
    return sorted(flaky, key=lambda a: a.failure_rate, reverse=True)


class FlakyTestTracker:
    """Current-run recorder plus durable, bounded per-test history."""

    def __init__(self, config: FlakyConfig | None = None) -> None:
        self.config = config or FlakyConfig()
        self.history_file = Path(self.config.history_file)
        self._history = self._load_history()
        self._current_run: dict[str, FlakyRun] = {}

    def _load_history(self) -> dict[str, list[FlakyRun]]:
        try:
            return read_history(self.history_file)
        except LeakwatchHistoryError as e:
            if isinstance(e.original_error, FileNotFoundError):
                logger.debug("No flaky test history at %s yet", self.history_file)
                return {}
            logger.warning("Could not load flaky test history: %s", e.message)
            return {}

    @property
    def history(self) -> dict[str, list[FlakyRun]]:
        return {name: list(runs) for name, runs in self._history.items()}

    @property
    def current_run(self) -> dict[str, FlakyRun]:
        return dict(self._current_run)

    def record_test(self, test_full_name: str, status: str, duration: float, retries: int = 0) -> None:
        """Record this run's outcome for a test. Recording again within a run overwrites."""
        self._current_run[test_full_name] = FlakyRun(
            timestamp=_utc_timestamp(),
            status=status,
            duration=float(duration or 0),
            retries=int(retries or 0),
        )

    def save_history(self) -> bool:
        """Append the current run to history, truncate each test to max_history_runs, persist.

        Returns False if the write failed (logged, not raised).
        """
        max_runs = self.config.max_history_runs
        for test_name, run in self._current_run.items():
            runs = self._history.setdefault(test_name, [])
            runs.append(run)
            if len(runs) > max_runs:
                del runs[: len(runs) - max_runs]
        self._current_run.clear()

        payload = {
            name: {"runs": [r.to_dict() for r in runs]}
            for name, runs in self._history.items()
        }
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            self.history_file.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        except (OSError, TypeError) as e:
            logger.error("Error saving flaky test history to %s: %s", self.history_file, e)
            return False
        logger.debug("Flaky test history saved: %d test(s) in %s", len(payload), self.history_file)
        return True

    def analyze_flaky_tests(self) -> list[FlakyTestAnalysis]:
        """Pure read of durable history; see analyze_history."""
        return analyze_history(
            self._history,
            self.config.flaky_threshold,
            window_size=self.config.window_size,
            min_runs=self.config.min_runs,
        )
