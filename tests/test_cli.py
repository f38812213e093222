"""Unit tests for CLI (subcommands, exit codes)."""

from __future__ import annotations

import tracemalloc
from pathlib import Path

import orjson
import pytest

from leakwatch.cli import _trim_history, main
from leakwatch.heap_snapshot import HeapSnapshotExporter
from leakwatch.models import FlakyRun


def _write_history(path: Path, statuses: list[str]) -> None:
    runs = [
        {"timestamp": f"2024-01-01T00:00:{i:02d}.000Z", "status": s, "duration": 10, "retries": 0}
        for i, s in enumerate(statuses)
    ]
    path.write_bytes(orjson.dumps({"f.py > t": {"runs": runs}}))


def test_main_version_exits_zero() -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0


def test_main_help_exits_zero() -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--help"])
    assert exc.value.code == 0


def test_main_without_command_exits_one() -> None:
    assert main([]) == 1


def test_trim_history_keeps_newest() -> None:
    runs = [FlakyRun(str(i), "passed", 1.0) for i in range(6)]
    assert [r.timestamp for r in _trim_history({"t": runs}, 2)["t"]] == ["4", "5"]


def test_flaky_reports_and_writes_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    history = tmp_path / "h.json"
    _write_history(history, ["passed", "failed", "passed", "failed", "passed"])
    out = tmp_path / "out" / "flaky.json"
    assert main(["flaky", "--history", str(history), "--json", str(out)]) == 0
    assert "FLAKY TESTS DETECTED" in capsys.readouterr().out
    data = orjson.loads(out.read_bytes())
    assert data[0]["test_name"] == "f.py > t"
    assert data[0]["failure_rate"] == 40


def test_flaky_gate_fails_run(tmp_path: Path) -> None:
    history = tmp_path / "h.json"
    _write_history(history, ["passed", "failed", "passed", "failed", "passed"])
    assert main(["flaky", "--history", str(history), "--fail-on-flaky"]) == 1


def test_flaky_threshold_override(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    history = tmp_path / "h.json"
    _write_history(history, ["passed", "failed", "passed", "failed", "passed"])
    assert main(["flaky", "--history", str(history), "--threshold", "0.5", "--fail-on-flaky"]) == 0
    assert "No flaky tests detected" in capsys.readouterr().out


def test_flaky_max_runs_trims_before_analysis(tmp_path: Path) -> None:
    history = tmp_path / "h.json"
    _write_history(history, ["failed", "passed", "failed", "passed", "passed", "passed"])
    # newest 3 runs are all passes
    assert main(["flaky", "--history", str(history), "--max-runs", "3", "--fail-on-flaky"]) == 0


def test_flaky_invalid_threshold(tmp_path: Path) -> None:
    history = tmp_path / "h.json"
    _write_history(history, ["passed"])
    assert main(["flaky", "--history", str(history), "--threshold", "2"]) == 1


def test_flaky_missing_history_exits_one(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["flaky", "--history", str(tmp_path / "absent.json")]) == 1
    assert "Flaky history file not found" in capsys.readouterr().err


def test_flaky_corrupt_history_exits_one(tmp_path: Path) -> None:
    history = tmp_path / "h.json"
    history.write_text("{broken", encoding="utf-8")
    assert main(["flaky", "--history", str(history)]) == 1


def test_config_prints_effective_values(tmp_config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["config", "--config", str(tmp_config_file)]) == 0
    out = capsys.readouterr().out
    assert '"environment": "ci"' in out
    assert '"memory_threshold_mb": 10' in out


def test_config_profile(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["config", "--env", "development"]) == 0
    assert '"memory_threshold_mb": 25' in capsys.readouterr().out


def test_config_missing_file_exits_one(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["config", "--config", "/nonexistent/leakwatch.yaml"]) == 1
    assert "Config file not found" in capsys.readouterr().err


def test_heap_missing_file_exits_one(tmp_path: Path) -> None:
    assert main(["heap", str(tmp_path / "absent.tracemalloc")]) == 1


def test_heap_garbage_file_exits_one(tmp_path: Path) -> None:
    bad = tmp_path / "bad.tracemalloc"
    bad.write_bytes(b"not a pickle")
    assert main(["heap", str(bad)]) == 1


def test_heap_prints_top_sites(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    started = not tracemalloc.is_tracing()
    if started:
        tracemalloc.start()
    try:
        retained = [bytearray(2048) for _ in range(20)]
        path = HeapSnapshotExporter(tmp_path).export("f.py > t")
        del retained
    finally:
        if started:
            tracemalloc.stop()
    assert path is not None
    assert main(["heap", str(path), "--limit", "5"]) == 0
    assert "Top 5 allocation sites" in capsys.readouterr().out
