"""
leakwatch - Per-test resource leak detection and flaky test tracking.

Snapshots heap, global names, active handles and listeners around each test,
diffs them into typed leak reports, and keeps a bounded pass/fail history per
test to flag unstable ones.
"""

from .exceptions import (
    LeakwatchConfigError,
    LeakwatchError,
    LeakwatchHistoryError,
    LeakwatchReportError,
)

__all__ = [
    "__version__",
    "LeakwatchConfigError",
    "LeakwatchError",
    "LeakwatchHistoryError",
    "LeakwatchReportError",
]

__version__ = "1.0.0"
