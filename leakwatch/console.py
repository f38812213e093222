"""Rich tables for the end-of-run leak and flaky summaries."""

from __future__ import annotations

import io

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import FlakyTestAnalysis, LeakSummary

LEAK_PREVENTION_TIPS = (
    "Cancel threading.Timer objects and join threads started by the test",
    "Remove logging handlers added during the test",
    "Revert global state with monkeypatch or fixture teardown",
    "Cancel pending asyncio tasks before the loop closes",
)
FLAKY_ACTIONS = (
    "Run tests multiple times to confirm flakiness",
    "Check for timing dependencies or async issues",
    "Review external dependencies (network, file system, etc.)",
    "Mock slow or nondeterministic collaborators",
)


def build_leak_summary_table(summary: LeakSummary) -> Table:
    """Single grid with run-wide leak counts and the per-type breakdown."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")
    table.add_row("Tests analyzed", str(summary.total_tests))
    table.add_row("Tests with leaks", f"{summary.tests_with_leaks} ({summary.total_leaks} total leaks)")
    table.add_row("Tests with warnings", f"{summary.tests_with_warnings} ({summary.total_warnings} total warnings)")
    table.add_row("Duration P50 / P95 (ms)", f"{summary.duration_p50_ms:.1f} / {summary.duration_p95_ms:.1f}")
    for leak_type, count in sorted(summary.leak_type_breakdown.items(), key=lambda x: -x[1]):
        table.add_row(f"  {leak_type}", str(count))
    return table


def build_worst_offenders_table(summary: LeakSummary, limit: int = 3) -> Table:
    table = Table(title="Worst offenders", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Test")
    table.add_column("Leaks", justify="right")
    table.add_column("Memory (MB)", justify="right")
    for i, offender in enumerate(summary.worst_offenders[:limit], 1):
        impact = offender.memory_impact_mb
        table.add_row(
            str(i),
            offender.test,
            str(offender.leak_count),
            f"{impact:.2f}" if impact is not None else "N/A",
        )
    return table


def build_flaky_table(flaky: list[FlakyTestAnalysis]) -> Table:
    table = Table(title="Flaky tests")
    table.add_column("Test")
    table.add_column("Failure rate", justify="right")
    table.add_column("Failures / Runs", justify="right")
    table.add_column("Avg duration (ms)", justify="right")
    table.add_column("Last failure")
    for f in flaky:
        table.add_row(
            f.test_name,
            f"{f.failure_rate}%",
            f"{f.failures}/{f.total_runs}",
            str(f.average_duration),
            f.last_failure or "-",
        )
    return table


def _bullets(lines: tuple[str, ...]) -> Text:
    return Text("\n".join(f"- {line}" for line in lines), style="dim")


def render_run_summary(console: Console, summary: LeakSummary, flaky: list[FlakyTestAnalysis]) -> None:
    """Print both summaries, with remediation hints when anything was found."""
    if flaky:
        console.print(Text(f"FLAKY TESTS DETECTED: {len(flaky)} potentially unstable test(s)", style="bold yellow"))
        console.print(build_flaky_table(flaky))
        console.print(_bullets(FLAKY_ACTIONS))
    else:
        console.print(Text("No flaky tests detected in recent history", style="green"))

    if summary.has_findings:
        console.print(
            Panel(
                build_leak_summary_table(summary),
                title=f"LEAKS DETECTED: {summary.tests_with_leaks} test(s) with leaks",
                border_style="red" if summary.total_leaks else "yellow",
            )
        )
        if summary.worst_offenders:
            console.print(build_worst_offenders_table(summary))
        console.print(_bullets(LEAK_PREVENTION_TIPS))
    else:
        console.print(Text(f"No leaks detected in {summary.total_tests} tracked test(s)", style="green"))


def render_to_text(summary: LeakSummary, flaky: list[FlakyTestAnalysis], width: int = 100) -> str:
    """Render the run summary to plain text (for writers that are not a TTY)."""
    buf = io.StringIO()
    console = Console(file=buf, width=width, force_terminal=False, color_system=None)
    render_run_summary(console, summary, flaky)
    return buf.getvalue()
