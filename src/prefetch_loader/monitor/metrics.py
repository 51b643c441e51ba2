"""
prefetch_loader.monitor.metrics
===============================
Shared-memory counters for prefetch loaders, readable by the monitor CLI
without touching the producer or consumer threads.

Layout
------
One ``SlotMetrics`` struct per loader slot (up to ``MAX_SLOTS`` loaders on
a host, typically one per rank), packed into a single POSIX shared-memory
block named ``prefetch_metrics_<job_id>``.

Writers are the producer thread (records, wraps, production time) and the
consumer thread (acquires, wait time, heartbeat) of one loader; they touch
disjoint fields.  Readers tolerate torn reads — the block is for display
only.
"""

import ctypes
import logging
import time
from multiprocessing import shared_memory
from typing import Optional

log = logging.getLogger(__name__)

MAX_SLOTS = 8


class SlotMetrics(ctypes.Structure):
    _fields_ = [
        # ── Producer side ────────────────────────────────────────────────────
        ("records_read",       ctypes.c_int64),   # records decoded / rows copied
        ("cursor_wraps",       ctypes.c_int64),   # dataset wraparounds
        ("files_loaded",       ctypes.c_int64),   # HDF5 row-block reads
        ("batches_produced",   ctypes.c_int64),
        ("produce_time_ms",    ctypes.c_int64),   # cumulative production time

        # ── Consumer side ────────────────────────────────────────────────────
        ("batches_acquired",   ctypes.c_int64),
        ("acquire_wait_ms",    ctypes.c_int64),   # cumulative time blocked in acquire()
        ("last_wait_ms",       ctypes.c_float),   # most recent acquire() wait

        # ── Liveness ─────────────────────────────────────────────────────────
        ("heartbeat_ts",       ctypes.c_int64),   # Unix epoch seconds
    ]


class SlotMetricsArray(ctypes.Structure):
    _fields_ = [("slots", SlotMetrics * MAX_SLOTS)]


class MetricsRegistry:
    """
    Publisher / subscriber for per-slot loader metrics.

    Parameters
    ----------
    job_id : Shared namespace; every loader and the monitor must agree.
    create : True on the first loader of a job to create and zero the block.
    slot   : Index of this loader's struct (0 … MAX_SLOTS-1).
    """

    def __init__(
        self,
        job_id: str  = "prefetch",
        create: bool = False,
        slot:   int  = 0,
    ) -> None:
        self.name = f"prefetch_metrics_{job_id}"
        self.slot = min(max(slot, 0), MAX_SLOTS - 1)
        self.size = ctypes.sizeof(SlotMetricsArray)
        self.shm:  Optional[shared_memory.SharedMemory] = None
        self.data: Optional[SlotMetricsArray]           = None

        try:
            if create:
                # A crashed run may have left its block behind.
                try:
                    stale = shared_memory.SharedMemory(name=self.name)
                    stale.unlink()
                    stale.close()
                except FileNotFoundError:
                    pass
                self.shm = shared_memory.SharedMemory(
                    name=self.name, create=True, size=self.size
                )
            else:
                self.shm = shared_memory.SharedMemory(name=self.name)

            self.data = SlotMetricsArray.from_buffer(self.shm.buf)
            if create:
                ctypes.memset(ctypes.addressof(self.data), 0, self.size)

        except (OSError, ValueError) as exc:
            log.warning(
                "Could not initialise shared-memory metrics for %s: %s",
                self.name, exc,
            )

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    @property
    def metrics(self) -> Optional[SlotMetrics]:
        if self.data is not None:
            return self.data.slots[self.slot]
        return None

    def inc(self, field: str, value: int = 1) -> None:
        if self.data is None:
            return
        m = self.data.slots[self.slot]
        setattr(m, field, getattr(m, field) + value)

    def set(self, field: str, value: float) -> None:
        if self.data is None:
            return
        setattr(self.data.slots[self.slot], field, value)

    def heartbeat(self) -> None:
        if self.data is None:
            return
        self.data.slots[self.slot].heartbeat_ts = int(time.time())

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    def read_all_slots(self) -> Optional[SlotMetricsArray]:
        return self.data

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Detach from shared memory (the block survives)."""
        if self.shm is not None:
            # ctypes views pin the exported buffer; drop them first.
            self.data = None
            self.shm.close()
            self.shm = None

    def unlink(self) -> None:
        """Destroy the block.  Call once, from the creator."""
        if self.shm is not None:
            self.data = None
            self.shm.close()
            self.shm.unlink()
            self.shm = None


# ── Module-level singleton ────────────────────────────────────────────────────

_REGISTRY: Optional[MetricsRegistry] = None


def init_registry(job_id: str, create: bool, slot: int) -> MetricsRegistry:
    """Create the process-wide registry used by every loader in this process."""
    global _REGISTRY
    _REGISTRY = MetricsRegistry(job_id=job_id, create=create, slot=slot)
    return _REGISTRY


def get_registry() -> Optional[MetricsRegistry]:
    """The registry set by ``init_registry``, or None."""
    return _REGISTRY


def reset_registry() -> None:
    """Detach and forget the process-wide registry."""
    global _REGISTRY
    if _REGISTRY is not None:
        _REGISTRY.close()
    _REGISTRY = None
