"""Point-in-time capture of process state around a test.

Every reader here is injected into SnapshotCapturer so tests (and other
runtimes) can substitute fakes for real process state. Counts are approximate:
they are only meant to be compared between two captures in the same process.

Capture never raises. A reader that fails yields a zero/empty value and the
failure is logged at debug level, which suppresses detection for that category
(possible false negatives, no false positives).
"""

from __future__ import annotations

import asyncio
import atexit
import builtins
import logging
import sys
import threading
import time
import tracemalloc
from typing import Any, Callable, Protocol

import psutil

from .logging_config import get_logger
from .models import MemoryUsage, ResourceCount, Snapshot

logger = get_logger("snapshot")


class GlobalsReader(Protocol):
    """Enumerates the names defined in the one ambient global namespace."""

    def names(self) -> frozenset[str]: ...


class ResourceCounter(Protocol):
    """Counts outstanding resources of one kind. May undercount."""

    def count(self) -> int: ...


class ModuleGlobalsReader:
    """Names in a module namespace. Defaults to ``builtins``, shared by every module."""

    __slots__ = ("_module",)

    def __init__(self, module: Any = builtins) -> None:
        self._module = module

    def names(self) -> frozenset[str]:
        return frozenset(vars(self._module))


class NamespaceGlobalsReader:
    """Own attribute names of an arbitrary namespace object (e.g. ``__main__``)."""

    __slots__ = ("_namespace",)

    def __init__(self, namespace: Any) -> None:
        self._namespace = namespace

    def names(self) -> frozenset[str]:
        ns = self._namespace
        if isinstance(ns, dict):
            return frozenset(ns)
        return frozenset(getattr(ns, "__dict__", {}))


def globals_reader_for_scope(scope: str) -> GlobalsReader:
    """Build the reader for a configured global scope ("builtins" or "main")."""
    if scope == "main":
        return NamespaceGlobalsReader(sys.modules["__main__"])
    return ModuleGlobalsReader(builtins)


class ActiveHandleCounter:
    """Live threads other than the caller, plus pending tasks of a running asyncio loop.

    ``threading.Timer`` objects are threads, so started timers are counted
    until they fire or are cancelled.
    """

    __slots__ = ()

    def count(self) -> int:
        current = threading.current_thread()
        threads = sum(1 for t in threading.enumerate() if t is not current and t.is_alive())
        return threads + self._pending_tasks()

    @staticmethod
    def _pending_tasks() -> int:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return 0
        return sum(1 for t in asyncio.all_tasks(loop) if not t.done())


class ListenerCounter:
    """Registered ``atexit`` callbacks plus handlers attached to every logger."""

    __slots__ = ()

    def count(self) -> int:
        return self._atexit_callbacks() + self._logging_handlers()

    @staticmethod
    def _atexit_callbacks() -> int:
        ncallbacks = getattr(atexit, "_ncallbacks", None)
        return int(ncallbacks()) if callable(ncallbacks) else 0

    @staticmethod
    def _logging_handlers() -> int:
        total = len(logging.getLogger().handlers)
        for lg in list(logging.Logger.manager.loggerDict.values()):
            if isinstance(lg, logging.Logger):
                total += len(lg.handlers)
        return total


class MemoryReader:
    """Resident/virtual size from psutil; Python heap from tracemalloc when tracing.

    Without tracing, resident size stands in for heap usage.
    """

    __slots__ = ("_process",)

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process

    def read(self) -> MemoryUsage:
        now = time.time()
        if self._process is None:
            self._process = psutil.Process()
        info = self._process.memory_info()
        rss, vms = int(info.rss), int(info.vms)
        if tracemalloc.is_tracing():
            current, peak = tracemalloc.get_traced_memory()
            return MemoryUsage(
                rss=rss,
                heap_used=int(current),
                heap_total=int(peak),
                external=max(rss - int(current), 0),
                timestamp=now,
            )
        return MemoryUsage(rss=rss, heap_used=rss, heap_total=vms, external=0, timestamp=now)


class SnapshotCapturer:
    """Captures Snapshots from injected readers. Pure reads, never raises."""

    __slots__ = ("_globals_reader", "_timer_counter", "_listener_counter", "_memory_reader", "_clock")

    def __init__(
        self,
        globals_reader: GlobalsReader | None = None,
        timer_counter: ResourceCounter | None = None,
        listener_counter: ResourceCounter | None = None,
        memory_reader: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._globals_reader = globals_reader or ModuleGlobalsReader()
        self._timer_counter = timer_counter or ActiveHandleCounter()
        self._listener_counter = listener_counter or ListenerCounter()
        self._memory_reader = memory_reader or MemoryReader()
        self._clock = clock

    def capture_memory(self) -> MemoryUsage:
        try:
            return self._memory_reader.read()
        except Exception as e:
            logger.debug("Memory introspection unavailable: %s", e)
            return MemoryUsage(rss=0, heap_used=0, heap_total=0, external=0, timestamp=self._clock())

    def capture_globals(self) -> frozenset[str]:
        try:
            return frozenset(self._globals_reader.names())
        except Exception as e:
            logger.debug("Global namespace introspection unavailable: %s", e)
            return frozenset()

    def capture_timers(self) -> ResourceCount:
        return ResourceCount(count=self._safe_count(self._timer_counter, "timer"), timestamp=self._clock())

    def capture_listeners(self) -> ResourceCount:
        return ResourceCount(count=self._safe_count(self._listener_counter, "listener"), timestamp=self._clock())

    def capture(self) -> Snapshot:
        """Capture all four categories into one immutable Snapshot."""
        return Snapshot(
            memory=self.capture_memory(),
            global_keys=self.capture_globals(),
            timer_count=self.capture_timers().count,
            listener_count=self.capture_listeners().count,
            timestamp=self._clock(),
        )

    @staticmethod
    def _safe_count(counter: ResourceCounter, kind: str) -> int:
        try:
            return max(int(counter.count()), 0)
        except Exception as e:
            logger.debug("%s introspection unavailable: %s", kind.capitalize(), e)
            return 0
