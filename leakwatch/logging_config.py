"""Structured logging configuration for leakwatch."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

LOG_LEVEL_ENV = "LEAKWATCH_LOG_LEVEL"
LOG_FORMAT_ENV = "LEAKWATCH_LOG_FORMAT"  # "json" | "text" (default)

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name. Configures root leakwatch logger on first use."""
    logger = logging.getLogger("leakwatch" if name == "leakwatch" else f"leakwatch.{name}")
    if not logger.handlers and logger.level == logging.NOTSET:
        _configure_leakwatch_logging()
    return logger


def _configure_leakwatch_logging() -> None:
    root = logging.getLogger("leakwatch")
    if root.handlers:
        return
    level_name = (os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_make_formatter())
    root.addHandler(handler)


def _make_formatter() -> logging.Formatter:
    fmt_env = (os.environ.get(LOG_FORMAT_ENV) or "text").lower()
    if fmt_env == "json":
        return _JsonFormatter()
    return logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT)


def attach_log_file(path: str | Path) -> logging.Handler | None:
    """Mirror leakwatch log output to a file.

    Idempotent per path. Returns the handler, or None if the file cannot be
    opened (logged, never raised: a broken log file must not fail the run).
    """
    target = Path(path).resolve()
    root = logging.getLogger("leakwatch")
    if not root.handlers:
        _configure_leakwatch_logging()
    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == target:
            return h
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(target, encoding="utf-8")
    except OSError as e:
        root.error("Failed to open log file %s: %s", target, e)
        return None
    handler.setFormatter(_make_formatter())
    root.addHandler(handler)
    return handler


def detach_log_file(handler: logging.Handler | None) -> None:
    """Remove and close a handler returned by attach_log_file."""
    if handler is None:
        return
    logging.getLogger("leakwatch").removeHandler(handler)
    handler.close()


class _JsonFormatter(logging.Formatter):
    """Simple JSON log formatter for structured logging (e.g. CI log shipping)."""

    def format(self, record: logging.LogRecord) -> str:
        import json
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)
