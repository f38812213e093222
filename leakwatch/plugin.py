"""pytest plugin: drives the leak detector and flaky tracker from test lifecycle hooks.

Enabled with ``--leakwatch``. Per test: logstart opens leak tracking,
logreport accumulates the outcome of setup/call/teardown, logfinish records
the flaky outcome and finishes leak tracking. At session end history is saved,
summaries are computed and optional reports written. Nothing here fails the
test session: report and history I/O errors are logged and swallowed.

Under pytest-xdist the work is split by process role. Workers run the tests,
so only they take snapshots; they ship their records back through
``workeroutput``. The controller runs no tests: it records flaky outcomes from
the forwarded reports, merges the workers' leak records, and is the single
writer of history and reports.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

import pytest

from .config import load_config
from .console import render_to_text
from .detector import LeakDetector, make_test_id
from .exceptions import LeakwatchConfigError, LeakwatchReportError
from .flaky import FlakyTestTracker
from .logging_config import attach_log_file, detach_log_file, get_logger
from .models import FlakyTestAnalysis, LeakSummary, LeakwatchConfig, TestMetrics
from .report import generate_csv_report, generate_html_report, generate_json_report

logger = get_logger("plugin")

PLUGIN_NAME = "leakwatch-session"
WORKER_OUTPUT_KEY = "leakwatch_metrics"

ROLE_LOCAL = "local"
ROLE_CONTROLLER = "controller"
ROLE_WORKER = "worker"


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("leakwatch", "per-test leak detection and flaky test tracking")
    group.addoption("--leakwatch", action="store_true", default=False, help="Enable leak detection and flaky tracking")
    group.addoption("--leakwatch-config", metavar="PATH", default=None, help="YAML config file")
    group.addoption("--leakwatch-env", metavar="NAME", default=None, help="Config profile (development, test, ci, production)")
    group.addoption("--leakwatch-history", metavar="PATH", default=None, help="Override flaky history file")
    group.addoption("--leakwatch-json", metavar="PATH", default=None, help="Write JSON report to PATH")
    group.addoption("--leakwatch-html", metavar="PATH", default=None, help="Write HTML report to PATH")
    group.addoption("--leakwatch-csv", metavar="PATH", default=None, help="Write per-test CSV report to PATH")


def process_role(config: Any) -> str:
    """ROLE_WORKER inside an xdist worker, ROLE_CONTROLLER in the xdist controller, else ROLE_LOCAL."""
    if hasattr(config, "workerinput"):
        return ROLE_WORKER
    # xdist registers "dsession" from a trylast pytest_configure, after ours has run
    if config.pluginmanager.hasplugin("dsession") or _distributes(config):
        return ROLE_CONTROLLER
    return ROLE_LOCAL


def _distributes(config: Any) -> bool:
    option = config.option
    return getattr(option, "dist", "no") != "no" and not getattr(option, "collectonly", False)


def pytest_configure(config: pytest.Config) -> None:
    if not config.getoption("leakwatch"):
        return
    try:
        lw_config = load_config(config.getoption("leakwatch_config"), config.getoption("leakwatch_env"))
    except LeakwatchConfigError as e:
        raise pytest.UsageError(f"leakwatch: {e}") from e
    history = config.getoption("leakwatch_history")
    if history:
        lw_config.flaky.history_file = history
    role = process_role(config)
    plugin = LeakwatchPlugin(
        lw_config,
        json_path=config.getoption("leakwatch_json"),
        html_path=config.getoption("leakwatch_html"),
        csv_path=config.getoption("leakwatch_csv"),
        role=role,
        workeroutput=getattr(config, "workeroutput", None),
    )
    config.pluginmanager.register(plugin, PLUGIN_NAME)


def pytest_unconfigure(config: pytest.Config) -> None:
    plugin = config.pluginmanager.get_plugin(PLUGIN_NAME)
    if plugin is not None:
        plugin.shutdown()
        config.pluginmanager.unregister(plugin)


def split_nodeid(nodeid: str, location: tuple[str, Any, str] | None = None) -> tuple[str, str]:
    """(test_name, test_file) from a pytest node id such as ``tests/test_a.py::TestX::test_y``."""
    file_part, sep, name_part = nodeid.partition("::")
    test_file = location[0] if location and location[0] else file_part
    return (name_part if sep else nodeid), test_file


@dataclass(slots=True)
class _PendingOutcome:
    status: str = "passed"
    duration_ms: float = 0.0
    retries: int = 0


class LeakwatchPlugin:
    """Session-scoped plugin object holding one detector and one flaky tracker."""

    def __init__(
        self,
        config: LeakwatchConfig,
        json_path: str | None = None,
        html_path: str | None = None,
        csv_path: str | None = None,
        detector: LeakDetector | None = None,
        flaky_tracker: FlakyTestTracker | None = None,
        role: str = ROLE_LOCAL,
        workeroutput: dict[str, Any] | None = None,
    ) -> None:
        self.config = config
        self.json_path = json_path
        self.html_path = html_path
        self.csv_path = csv_path
        self.role = role
        self._workeroutput = workeroutput if workeroutput is not None else {}
        self._log_handler = attach_log_file(config.leak.log_file) if config.leak.log_file else None
        if detector is None:
            leak_config = config.leak
            if role == ROLE_CONTROLLER:
                # merges worker records only; no tracing or snapshots in this process
                leak_config = replace(leak_config, trace_allocations=False, generate_heap_snapshots=False)
            detector = LeakDetector(leak_config)
        self.detector = detector
        self.flaky_tracker = flaky_tracker or FlakyTestTracker(config.flaky)
        self._active: dict[str, str] = {}  # nodeid -> leak test id
        self._pending: dict[str, _PendingOutcome] = {}
        self.leak_summary: LeakSummary | None = None
        self.flaky_tests: list[FlakyTestAnalysis] = []

    @property
    def tracks_leaks(self) -> bool:
        return self.role != ROLE_CONTROLLER

    @property
    def records_flaky(self) -> bool:
        return self.role != ROLE_WORKER

    def pytest_runtest_logstart(self, nodeid: str, location: tuple[str, Any, str]) -> None:
        test_name, test_file = split_nodeid(nodeid, location)
        self._pending[nodeid] = _PendingOutcome()
        if not self.tracks_leaks:
            return
        if self.detector.is_excluded(test_name, test_file):
            logger.debug("Excluded from leak detection: %s", nodeid)
            return
        self._active[nodeid] = self.detector.start_test(test_name, test_file)

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        pending = self._pending.setdefault(report.nodeid, _PendingOutcome())
        pending.duration_ms += float(getattr(report, "duration", 0.0) or 0.0) * 1000.0
        # pytest-rerunfailures reports failed attempts as "rerun"
        if report.outcome == "rerun":
            pending.retries += 1
            return
        if report.outcome == "failed":
            pending.status = "failed"
        elif report.outcome == "skipped" and pending.status != "failed":
            pending.status = "skipped"

    def pytest_runtest_logfinish(self, nodeid: str, location: tuple[str, Any, str]) -> None:
        test_name, test_file = split_nodeid(nodeid, location)
        pending = self._pending.pop(nodeid, None) or _PendingOutcome()
        if self.records_flaky:
            self.flaky_tracker.record_test(
                make_test_id(test_name, test_file), pending.status, pending.duration_ms, pending.retries
            )
            if pending.retries:
                logger.warning("%s required %d retr%s: potential flakiness", nodeid, pending.retries, "y" if pending.retries == 1 else "ies")

        test_id = self._active.pop(nodeid, None)
        if test_id is None:
            return
        metrics = self.detector.finish_test(test_id, pending.status)
        if metrics is not None and metrics.leaks_detected:
            logger.warning(
                "%d leak(s) in %s: %s",
                len(metrics.leaks_detected), test_id,
                ", ".join(r.type.value for r in metrics.leaks_detected),
            )

    @pytest.hookimpl(optionalhook=True)
    def pytest_testnodedown(self, node: Any, error: Any) -> None:
        """xdist controller: merge the leak records a worker shipped at session end."""
        records = getattr(node, "workeroutput", {}).get(WORKER_OUTPUT_KEY) or []
        self.detector.add_metrics([TestMetrics.from_dict(r) for r in records])
        logger.debug("Merged %d leak record(s) from a worker", len(records))

    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        if self.role == ROLE_WORKER:
            self._workeroutput[WORKER_OUTPUT_KEY] = [m.to_dict() for m in self.detector.metrics]
            return
        self.complete_run()

    def pytest_terminal_summary(self, terminalreporter: Any) -> None:
        if self.leak_summary is None:
            return
        terminalreporter.write_sep("=", "leakwatch")
        terminalreporter.write(render_to_text(self.leak_summary, self.flaky_tests))
        terminalreporter.write_line(f"Flaky test history: {self.flaky_tracker.history_file}")

    def complete_run(self) -> None:
        """Persist history, compute both summaries and write optional reports."""
        self.flaky_tracker.save_history()
        self.flaky_tests = self.flaky_tracker.analyze_flaky_tests()
        self.leak_summary = self.detector.get_summary()
        metrics = self.detector.metrics
        writers = (
            ("JSON", self.json_path, lambda p: generate_json_report(p, self.leak_summary, self.flaky_tests, metrics)),
            ("HTML", self.html_path, lambda p: generate_html_report(p, self.leak_summary, self.flaky_tests, metrics)),
            ("CSV", self.csv_path, lambda p: generate_csv_report(p, metrics)),
        )
        for kind, path, write in writers:
            if not path:
                continue
            try:
                write(path)
            except LeakwatchReportError as e:
                logger.error("%s report not written: %s", kind, e)

    def shutdown(self) -> None:
        self.detector.shutdown()
        detach_log_file(self._log_handler)
        self._log_handler = None
