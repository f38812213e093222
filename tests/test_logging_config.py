"""Unit tests for logging_config (get_logger, log file mirroring)."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from leakwatch.logging_config import (
    LOG_FORMAT_ENV,
    LOG_LEVEL_ENV,
    _JsonFormatter,
    attach_log_file,
    detach_log_file,
    get_logger,
)


def test_get_logger_returns_logger() -> None:
    logger = get_logger("test")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "leakwatch.test"


def test_get_logger_root_name() -> None:
    assert get_logger("leakwatch").name == "leakwatch"


def test_root_logger_has_handler() -> None:
    get_logger("anything")
    assert logging.getLogger("leakwatch").handlers


def test_env_names() -> None:
    assert LOG_LEVEL_ENV == "LEAKWATCH_LOG_LEVEL"
    assert LOG_FORMAT_ENV == "LEAKWATCH_LOG_FORMAT"


def test_attach_log_file_writes_and_detaches(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "leak-detection.log"
    handler = attach_log_file(path)
    assert handler is not None
    try:
        assert attach_log_file(path) is handler
        get_logger("filetest").warning("leak found in %s", "t1")
        handler.flush()
        assert "leak found in t1" in path.read_text(encoding="utf-8")
    finally:
        detach_log_file(handler)
    assert handler not in logging.getLogger("leakwatch").handlers


def test_attach_log_file_failure_returns_none(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    assert attach_log_file(blocker / "nested" / "x.log") is None


def test_detach_none_is_noop() -> None:
    detach_log_file(None)


def test_json_formatter_outputs_object() -> None:
    record = logging.LogRecord("leakwatch.t", logging.ERROR, __file__, 1, "boom %d", (3,), None)
    out = json.loads(_JsonFormatter().format(record))
    assert out["level"] == "ERROR"
    assert out["logger"] == "leakwatch.t"
    assert out["message"] == "boom 3"
