"""YAML configuration loader with environment profiles.

Effective values are merged as: built-in defaults < environment profile < file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

from .exceptions import LeakwatchConfigError
from .logging_config import get_logger
from .models import FlakyConfig, LeakDetectionConfig, LeakwatchConfig

logger = get_logger("config")

ENVIRONMENT_ENV = "LEAKWATCH_ENV"
DEFAULT_ENVIRONMENT = "test"
GLOBAL_SCOPES = ("builtins", "main")

ENVIRONMENT_PROFILES: dict[str, dict[str, Any]] = {
    "development": {
        "verbose": True,
        "generate_heap_snapshots": True,
        "memory_threshold_mb": 25,
    },
    "test": {
        "verbose": False,
        "generate_heap_snapshots": False,
        "memory_threshold_mb": 50,
    },
    "ci": {
        "verbose": False,
        "generate_heap_snapshots": False,
        "memory_threshold_mb": 100,  # more lenient on shared runners
        "exclude_patterns": ["site-packages"],
    },
    "production": {
        "verbose": False,
        "generate_heap_snapshots": False,
        "track_event_listeners": False,
        "memory_threshold_mb": 200,
    },
}

_BOOL_LEAK_KEYS = (
    "track_event_listeners", "track_timers", "track_globals",
    "generate_heap_snapshots", "verbose", "trace_allocations",
)
_FLOAT_LEAK_KEYS = ("memory_threshold_mb", "heap_growth_threshold")
_STR_LEAK_KEYS = ("heap_snapshot_dir", "global_scope")


def compile_exclude_patterns(patterns: list[str]) -> list[re.Pattern[str]]:
    """Compile exclude patterns as written (add ``(?i)`` for case-insensitive matching).

    Raises LeakwatchConfigError on the first pattern that is not a valid regular expression.
    """
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise LeakwatchConfigError(
                f"Invalid exclude pattern: {pattern!r}",
                context={"pattern": pattern},
                original_error=e,
            ) from e
    return compiled


def _validate_config(c: LeakwatchConfig) -> None:
    """Validate LeakwatchConfig bounds. Raises LeakwatchConfigError if invalid."""
    leak, flaky = c.leak, c.flaky
    if leak.memory_threshold_mb <= 0:
        raise LeakwatchConfigError("memory_threshold_mb must be > 0")
    if leak.heap_growth_threshold <= 0:
        raise LeakwatchConfigError("heap_growth_threshold must be > 0")
    if leak.global_scope not in GLOBAL_SCOPES:
        raise LeakwatchConfigError(
            f"global_scope must be one of {', '.join(GLOBAL_SCOPES)}",
            context={"global_scope": leak.global_scope},
        )
    compile_exclude_patterns(leak.exclude_patterns)
    if not 0 < flaky.flaky_threshold <= 1:
        raise LeakwatchConfigError("flaky_threshold must be > 0 and <= 1")
    if flaky.max_history_runs < 1:
        raise LeakwatchConfigError("max_history_runs must be >= 1")
    if flaky.window_size < 1:
        raise LeakwatchConfigError("window_size must be >= 1")
    if flaky.min_runs < 1:
        raise LeakwatchConfigError("min_runs must be >= 1")


def resolve_environment(explicit: str | None = None, raw: dict[str, Any] | None = None) -> str:
    """Pick the profile name: explicit argument, then file key, then env var, then default."""
    for candidate in (explicit, (raw or {}).get("environment"), os.environ.get(ENVIRONMENT_ENV)):
        if candidate:
            return str(candidate).strip().lower()
    return DEFAULT_ENVIRONMENT


def _read_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise LeakwatchConfigError(
            f"Config file not found: {path}",
            context={"path": str(path)}
        )
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise LeakwatchConfigError(
            f"Invalid YAML syntax in config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise LeakwatchConfigError(
            f"Cannot read config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise LeakwatchConfigError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__}
        )
    return raw


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    section = raw.get(key) or {}
    if not isinstance(section, dict):
        raise LeakwatchConfigError(
            f"'{key}' section must be a mapping",
            context={"actual_type": type(section).__name__},
        )
    return section


def _build_leak_config(values: dict[str, Any]) -> LeakDetectionConfig:
    c = LeakDetectionConfig()
    for key in _FLOAT_LEAK_KEYS:
        if values.get(key) is not None:
            setattr(c, key, float(values[key]))
    for key in _BOOL_LEAK_KEYS:
        if values.get(key) is not None:
            setattr(c, key, _as_bool(values[key], key))
    for key in _STR_LEAK_KEYS:
        if values.get(key) is not None:
            setattr(c, key, str(values[key]).strip())
    if "log_file" in values:
        c.log_file = str(values["log_file"]) if values["log_file"] else None
    patterns = values.get("exclude_patterns")
    if patterns is not None:
        if isinstance(patterns, str):
            patterns = [patterns]
        c.exclude_patterns = [str(p) for p in patterns]
    return c


def _build_flaky_config(values: dict[str, Any]) -> FlakyConfig:
    c = FlakyConfig()
    if values.get("history_file"):
        c.history_file = str(values["history_file"])
    if values.get("max_history_runs") is not None:
        c.max_history_runs = int(values["max_history_runs"])
    if values.get("flaky_threshold") is not None:
        c.flaky_threshold = float(values["flaky_threshold"])
    if values.get("window_size") is not None:
        c.window_size = int(values["window_size"])
    if values.get("min_runs") is not None:
        c.min_runs = int(values["min_runs"])
    return c


def load_config(path: str | Path | None = None, environment: str | None = None) -> LeakwatchConfig:
    """Load effective configuration.

    Args:
        path: Optional YAML file with ``leak_detection`` and ``flaky`` sections
        environment: Profile name overriding the file and LEAKWATCH_ENV

    Returns:
        Validated LeakwatchConfig instance

    Raises:
        LeakwatchConfigError: If file not found, invalid YAML, or validation fails
    """
    raw = _read_yaml(path) if path is not None else {}
    env = resolve_environment(environment, raw)
    profile = ENVIRONMENT_PROFILES.get(env)
    if profile is None:
        logger.debug("Unknown environment profile '%s', using base defaults", env)
        profile = {}

    leak_values = {**profile, **_section(raw, "leak_detection")}
    try:
        config = LeakwatchConfig(
            leak=_build_leak_config(leak_values),
            flaky=_build_flaky_config(_section(raw, "flaky")),
            environment=env,
            source_path=str(path) if path is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise LeakwatchConfigError(
            f"Invalid config value: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    _validate_config(config)
    logger.debug(
        "Loaded config: environment=%s, memory_threshold_mb=%s, history_file=%s",
        config.environment, config.leak.memory_threshold_mb, config.flaky.history_file,
    )
    return config


def config_to_dict(config: LeakwatchConfig) -> dict[str, Any]:
    """Plain mapping of the effective configuration (for display and reports)."""
    leak, flaky = config.leak, config.flaky
    return {
        "environment": config.environment,
        "source_path": config.source_path,
        "leak_detection": {
            "memory_threshold_mb": leak.memory_threshold_mb,
            "heap_growth_threshold": leak.heap_growth_threshold,
            "track_event_listeners": leak.track_event_listeners,
            "track_timers": leak.track_timers,
            "track_globals": leak.track_globals,
            "generate_heap_snapshots": leak.generate_heap_snapshots,
            "heap_snapshot_dir": leak.heap_snapshot_dir,
            "log_file": leak.log_file,
            "verbose": leak.verbose,
            "exclude_patterns": list(leak.exclude_patterns),
            "global_scope": leak.global_scope,
            "trace_allocations": leak.trace_allocations,
        },
        "flaky": {
            "history_file": flaky.history_file,
            "max_history_runs": flaky.max_history_runs,
            "flaky_threshold": flaky.flaky_threshold,
            "window_size": flaky.window_size,
            "min_runs": flaky.min_runs,
        },
    }


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "on", "1"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "off", "0"):
        return False
    if isinstance(value, int):
        return bool(value)
    raise ValueError(f"{key} must be a boolean, got {value!r}")
