"""
prefetch_loader.monitor.tracing
===============================
Chrome trace-event spans for the producer and consumer threads.

    start_tracing("/tmp/prefetch")       # → /tmp/prefetch_<pid>.json
    with trace("produce_batch", "prefetch"):
        ...
    stop_tracing()

Load the file in chrome://tracing or Perfetto to see production overlap
with consumption.  When tracing is off, ``trace`` costs one attribute read.
"""

import json
import os
import threading
import time
from contextlib import contextmanager
from typing import Optional, TextIO


class ProcessTracer:
    def __init__(self):
        self.enabled = False
        self.path: Optional[str] = None
        self._f:   Optional[TextIO] = None
        self._first = True
        self._lock  = threading.Lock()

    def start(self, base_path: str) -> str:
        """Open ``<base_path>_<pid>.json``; one file per process."""
        with self._lock:
            if self._f is not None:
                return self.path
            self.path = f"{base_path}_{os.getpid()}.json"
            self._f = open(self.path, "w")
            self._f.write("[\n")
            self._first = True
            self.enabled = True
        return self.path

    def stop(self) -> None:
        with self._lock:
            self.enabled = False
            if self._f is not None:
                self._f.write("\n]\n")
                self._f.close()
                self._f = None

    def record(self, name: str, cat: str, start_us: int, dur_us: int) -> None:
        event = json.dumps({
            "name": name,
            "cat":  cat,
            "ph":   "X",
            "ts":   start_us,
            "dur":  dur_us,
            "pid":  os.getpid(),
            "tid":  threading.get_native_id(),
            "args": {"thread": threading.current_thread().name},
        })
        with self._lock:
            if self._f is None:
                return
            if not self._first:
                self._f.write(",\n")
            self._first = False
            self._f.write(event)


_TRACER = ProcessTracer()


def start_tracing(base_path: str) -> str:
    """Start collecting spans; returns the trace file path."""
    return _TRACER.start(base_path)


def stop_tracing() -> None:
    _TRACER.stop()


@contextmanager
def trace(name: str, cat: str = "prefetch"):
    """Record the duration of the enclosed block as one complete event."""
    if not _TRACER.enabled:
        yield
        return

    start = time.perf_counter_ns() // 1000
    try:
        yield
    finally:
        _TRACER.record(name, cat, start, time.perf_counter_ns() // 1000 - start)
