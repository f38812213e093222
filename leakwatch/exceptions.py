"""Custom exceptions for leakwatch.

All leakwatch-specific exceptions inherit from LeakwatchError for unified error
handling. Tracking paths never raise them into the host test run; they surface
from configuration loading, report writing and the CLI.
"""

from __future__ import annotations

from typing import Any


class LeakwatchError(Exception):
    """Base exception for all leakwatch errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "LeakwatchError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class LeakwatchConfigError(LeakwatchError):
    """Raised when configuration is invalid or file cannot be loaded.

    Common causes:
    - Config file not found
    - Invalid YAML syntax
    - Invalid field values (e.g., memory_threshold_mb <= 0)
    - Exclude pattern that is not a valid regular expression
    """


class LeakwatchHistoryError(LeakwatchError):
    """Raised when a flaky-test history file cannot be read in strict mode.

    The tracker itself degrades to empty history; this is used by the CLI,
    where a missing or corrupt history file is a user error.
    """


class LeakwatchReportError(LeakwatchError):
    """Raised when a report file (JSON, CSV, HTML) cannot be written."""
