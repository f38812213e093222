"""Unit tests for snapshot capture (fake readers, never-raise behavior)."""

from __future__ import annotations

import builtins
import logging
import threading
import types

from leakwatch.snapshot import (
    ActiveHandleCounter,
    ListenerCounter,
    MemoryReader,
    ModuleGlobalsReader,
    NamespaceGlobalsReader,
    SnapshotCapturer,
    globals_reader_for_scope,
)


class _Broken:
    def names(self) -> frozenset[str]:
        raise RuntimeError("no globals here")

    def count(self) -> int:
        raise RuntimeError("no handles here")

    def read(self):
        raise RuntimeError("no memory info")


def test_capture_uses_injected_readers(fake_process) -> None:
    fake_process.memory.heap_used = 1234
    fake_process.globals.names_set = {"a", "b"}
    fake_process.timers.value = 3
    fake_process.listeners.value = 7
    snap = fake_process.capturer().capture()
    assert snap.memory is not None
    assert snap.memory.heap_used == 1234
    assert snap.global_keys == frozenset({"a", "b"})
    assert snap.timer_count == 3
    assert snap.listener_count == 7
    assert snap.timestamp == fake_process.clock.now


def test_snapshot_is_isolated_from_later_changes(fake_process) -> None:
    capturer = fake_process.capturer()
    first = capturer.capture()
    fake_process.globals.names_set.add("later")
    second = capturer.capture()
    assert "later" not in first.global_keys
    assert "later" in second.global_keys


def test_capture_never_raises() -> None:
    broken = _Broken()
    capturer = SnapshotCapturer(
        globals_reader=broken,
        timer_counter=broken,
        listener_counter=broken,
        memory_reader=broken,
        clock=lambda: 5.0,
    )
    snap = capturer.capture()
    assert snap.memory is not None
    assert snap.memory.heap_used == 0
    assert snap.memory.timestamp == 5.0
    assert snap.global_keys == frozenset()
    assert snap.timer_count == 0
    assert snap.listener_count == 0


def test_resource_counts_carry_timestamp(fake_process) -> None:
    fake_process.timers.value = 2
    capturer = fake_process.capturer()
    timers = capturer.capture_timers()
    assert timers.count == 2
    assert timers.timestamp == fake_process.clock.now


def test_negative_count_clamped(fake_process) -> None:
    fake_process.listeners.value = -4
    assert fake_process.capturer().capture_listeners().count == 0


def test_module_globals_reader_sees_new_builtin() -> None:
    reader = ModuleGlobalsReader()
    name = "_leakwatch_probe_name"
    assert name not in reader.names()
    setattr(builtins, name, 1)
    try:
        assert name in reader.names()
    finally:
        delattr(builtins, name)


def test_namespace_reader_accepts_object_and_dict() -> None:
    ns = types.SimpleNamespace(alpha=1, beta=2)
    assert NamespaceGlobalsReader(ns).names() == frozenset({"alpha", "beta"})
    assert NamespaceGlobalsReader({"gamma": 3}).names() == frozenset({"gamma"})


def test_globals_reader_for_scope() -> None:
    assert isinstance(globals_reader_for_scope("builtins"), ModuleGlobalsReader)
    assert isinstance(globals_reader_for_scope("main"), NamespaceGlobalsReader)


def test_active_handle_counter_sees_timer() -> None:
    counter = ActiveHandleCounter()
    before = counter.count()
    timer = threading.Timer(30.0, lambda: None)
    timer.start()
    try:
        assert counter.count() >= before + 1
    finally:
        timer.cancel()
        timer.join()


def test_listener_counter_sees_handler() -> None:
    counter = ListenerCounter()
    before = counter.count()
    lg = logging.getLogger("leakwatch_tests.listener_probe")
    handler = logging.NullHandler()
    lg.addHandler(handler)
    try:
        assert counter.count() == before + 1
    finally:
        lg.removeHandler(handler)


def test_memory_reader_reports_positive_rss() -> None:
    usage = MemoryReader().read()
    assert usage.rss > 0
    assert usage.heap_used > 0
