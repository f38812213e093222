"""Report writers: JSON (orjson), CSV, and a self-contained HTML page (Jinja2).

Writers create parent directories and raise LeakwatchReportError on I/O
failure; the run-level caller decides whether to swallow it.
"""

from __future__ import annotations

import csv
import io
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape

from . import __version__ as leakwatch_version
from .exceptions import LeakwatchReportError
from .models import FlakyTestAnalysis, LeakSummary, TestMetrics

CSV_COLUMNS = (
    "test_id", "test_file", "test_name", "status", "state", "duration_ms",
    "memory_delta_mb", "leak_count", "warning_count", "leak_types",
)


def _serialize(obj: Any) -> str:
    """JSON-serialize for HTML embedding (orjson). Safe for script context (no </script>)."""
    s = orjson.dumps(obj).decode("utf-8")
    return s.replace("</", "<\\/")


def _write(out: Path, data: str | bytes) -> None:
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, bytes):
            out.write_bytes(data)
        else:
            out.write_text(data, encoding="utf-8")
    except OSError as e:
        raise LeakwatchReportError(
            f"Cannot write report: {e}", context={"path": str(out)}, original_error=e
        ) from e


def _metrics_row(m: TestMetrics) -> dict[str, Any]:
    delta_mb = m.memory_delta_mb
    duration = m.duration_ms
    return {
        "test_id": m.test_id,
        "test_file": m.test_file,
        "test_name": m.test_name,
        "status": m.status or "",
        "state": m.state.value,
        "duration_ms": round(duration, 2) if duration is not None else "",
        "memory_delta_mb": round(delta_mb, 2) if delta_mb is not None else "",
        "leak_count": len(m.leaks_detected),
        "warning_count": len(m.warnings),
        "leak_types": ";".join(r.type.value for r in m.leaks_detected),
    }


def build_payload(
    summary: LeakSummary,
    flaky: Iterable[FlakyTestAnalysis],
    metrics: Iterable[TestMetrics] = (),
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    """Machine-readable run result shared by the JSON and HTML writers."""
    generated = generated_at or datetime.now(timezone.utc)
    flaky_list = [f.to_dict() for f in flaky]
    return {
        "leakwatch_version": leakwatch_version,
        "generated_at": generated.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "leak_summary": summary.to_dict(),
        "flaky_tests": flaky_list,
        "tests": [m.to_dict() for m in metrics],
        "passed": summary.total_leaks == 0 and not flaky_list,
    }


def generate_json_report(
    output_path: str | Path,
    summary: LeakSummary,
    flaky: Iterable[FlakyTestAnalysis],
    metrics: Iterable[TestMetrics] = (),
) -> None:
    """Write leak summary, flaky tests and per-test metrics as indented JSON."""
    payload = build_payload(summary, flaky, metrics)
    _write(Path(output_path), orjson.dumps(payload, option=orjson.OPT_INDENT_2))


def generate_csv_report(output_path: str | Path, metrics: Iterable[TestMetrics]) -> None:
    """One row per tracked test. Header only when nothing was tracked."""
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for m in metrics:
        writer.writerow(_metrics_row(m))
    _write(Path(output_path), buf.getvalue())


def generate_html_report(
    output_path: str | Path,
    summary: LeakSummary,
    flaky: Iterable[FlakyTestAnalysis],
    metrics: Iterable[TestMetrics] = (),
    title: str = "Leak & Flaky Test Report",
) -> None:
    """Render a single self-contained HTML page."""
    metrics = list(metrics)
    flaky = list(flaky)
    payload = build_payload(summary, flaky, metrics)

    leaking_rows = [
        {
            **_metrics_row(m),
            "reports": [r.to_dict() for r in (*m.leaks_detected, *m.warnings)],
        }
        for m in metrics
        if m.leaks_detected or m.warnings
    ]
    breakdown = sorted(summary.leak_type_breakdown.items(), key=lambda x: -x[1])

    if summary.total_tests == 0 and not flaky:
        verdict, verdict_class = "No data", "warning"
    elif summary.total_leaks or flaky:
        verdict, verdict_class = "Needs attention", "danger"
    elif summary.total_warnings:
        verdict, verdict_class = "Warnings only", "warning"
    else:
        verdict, verdict_class = "Clean", "success"

    env = Environment(
        loader=PackageLoader("leakwatch", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("report.html")
    html = template.render(
        title=title,
        summary=payload["leak_summary"],
        breakdown=breakdown,
        worst_offenders=payload["leak_summary"]["worst_offenders"],
        flaky_tests=payload["flaky_tests"],
        leaking_rows=leaking_rows,
        verdict=verdict,
        verdict_class=verdict_class,
        payload_json=_serialize(payload),
        generated_at=payload["generated_at"],
        developer_info={
            "leakwatch_version": leakwatch_version,
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        },
    )
    _write(Path(output_path), html)
