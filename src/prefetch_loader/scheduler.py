"""
prefetch_loader.scheduler
=========================
Double-buffered producer / consumer scheduling.

Separation of concerns
----------------------
RecordProducer     — fills a buffer from a record store: decode → augment →
                     advance, one slot at a time.
RowBlockProducer   — fills a buffer from an HDF5 file set, accumulating row
                     blocks across files.
PrefetchScheduler  — owns the single worker thread and the buffer handoff.

Handoff
-------
``launch()`` moves the buffer into a production future on a one-worker
executor; nothing else holds it while the pass runs.  ``acquire()`` blocks
on that future — its completion is the barrier that orders every buffer
write before the consumer's copy — takes the buffer back, copies it into
the caller's tensors and relaunches straight away.

A producer exception surfaces from ``acquire()``.  The buffer is then lost
with the failed pass, so the scheduler refuses any further use.
"""

from __future__ import annotations

import concurrent.futures
import enum
import logging
import threading
import time
from typing import Optional, Tuple

import numpy as np
import torch

from prefetch_loader.backends        import BackendCursor, HDF5FileSet
from prefetch_loader.errors          import BackendError, PrefetchError
from prefetch_loader.memory          import PrefetchBuffer
from prefetch_loader.monitor.metrics import get_registry
from prefetch_loader.monitor.tracing import trace
from prefetch_loader.records         import decode_datum
from prefetch_loader.rng             import rng_rand
from prefetch_loader.transform       import AugmentationPipeline

log = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# Producers
# ══════════════════════════════════════════════════════════════════════════════

class RecordProducer:
    """Decode and augment ``batch_size`` records from a record-store cursor."""

    def __init__(self, cursor: BackendCursor, pipeline: AugmentationPipeline):
        self._cursor        = cursor
        self._pipeline      = pipeline
        self._require_bytes = pipeline.crop_size > 0

    @property
    def needs_rng(self) -> bool:
        return self._pipeline.needs_rng

    def fill(self, buf: PrefetchBuffer, rng: Optional[np.random.Generator]) -> None:
        data, labels = buf.data_rows, buf.label_rows
        wraps_before = self._cursor.wraps
        for item in range(buf.batch_size):
            sample = decode_datum(self._cursor.current(), require_bytes=self._require_bytes)
            self._pipeline.transform(sample, rng, data[item])
            if labels is not None:
                labels[item, 0] = sample.label
            self._cursor.advance()

        registry = get_registry()
        if registry:
            registry.inc("records_read", buf.batch_size)
            registry.inc("cursor_wraps", self._cursor.wraps - wraps_before)


class RowBlockProducer:
    """
    Accumulate ``batch_size`` rows across the files of an HDF5 file set.

    Each step asks for ``batch_size - loaded_so_far`` rows at the current
    position; the file set moves to the next file on a short read.  Rows are
    copied verbatim.
    """

    needs_rng = False

    def __init__(self, files: HDF5FileSet, sample_shape: Tuple[int, int, int]):
        self._files        = files
        self._sample_shape = tuple(sample_shape)

    def fill(self, buf: PrefetchBuffer, rng: Optional[np.random.Generator]) -> None:
        data, labels = buf.data_rows, buf.label_rows
        wraps_before = self._files.wraps
        loaded_so_far = 0
        empty_reads   = 0
        reads         = 0

        while loaded_so_far < buf.batch_size:
            rows, row_labels = self._files.read_rows(buf.batch_size - loaded_so_far)
            reads += 1
            loaded_here = rows.shape[0]
            if loaded_here == 0:
                empty_reads += 1
                if empty_reads > self._files.num_files:
                    raise BackendError(
                        f"No rows left in any of the {self._files.num_files} HDF5 files"
                    )
                continue
            empty_reads = 0

            if tuple(rows.shape[1:]) != self._sample_shape:
                raise BackendError(
                    f"HDF5 rows of shape {tuple(rows.shape[1:])} do not match "
                    f"dataset shape {self._sample_shape}"
                )
            end = loaded_so_far + loaded_here
            data[loaded_so_far:end] = rows
            if labels is not None:
                if row_labels.shape[1] != labels.shape[1]:
                    raise BackendError(
                        f"HDF5 label width {row_labels.shape[1]} does not match "
                        f"label_dim {labels.shape[1]}"
                    )
                labels[loaded_so_far:end] = row_labels
            loaded_so_far = end

        registry = get_registry()
        if registry:
            registry.inc("records_read", buf.batch_size)
            registry.inc("files_loaded", reads)
            registry.inc("cursor_wraps", self._files.wraps - wraps_before)


# ══════════════════════════════════════════════════════════════════════════════
# Scheduler
# ══════════════════════════════════════════════════════════════════════════════

class State(enum.Enum):
    IDLE      = "idle"        # built, not yet launched
    PRODUCING = "producing"
    READY     = "ready"       # pass finished, buffer waiting for acquire()
    FAILED    = "failed"
    CLOSED    = "closed"


class PrefetchScheduler:
    """
    One producer thread, one buffer, one consumer.

    Parameters
    ----------
    producer : RecordProducer or RowBlockProducer.
    buffer   : The prefetch buffer; owned by the scheduler from here on.
    name     : Worker thread name prefix.
    """

    def __init__(self, producer, buffer: PrefetchBuffer, name: str = "prefetch"):
        self._producer = producer
        self._buffer: Optional[PrefetchBuffer] = buffer
        self._data_shape  = buffer.data_shape
        self._label_shape = buffer.label_shape

        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers        = 1,
            thread_name_prefix = name,
        )
        self._future: Optional[concurrent.futures.Future] = None
        self._consumer_lock = threading.Lock()
        self._failed = False
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        if self._closed:
            return State.CLOSED
        if self._failed:
            return State.FAILED
        if self._future is None:
            return State.IDLE
        return State.READY if self._future.done() else State.PRODUCING

    @property
    def data_shape(self) -> Tuple[int, ...]:
        return self._data_shape

    @property
    def label_shape(self) -> Optional[Tuple[int, ...]]:
        return self._label_shape

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def launch(self) -> None:
        """Start filling the buffer on the worker thread."""
        if self._closed or self._failed:
            raise PrefetchError(f"Cannot launch production: scheduler is {self.state.value}")
        if self._future is not None:
            raise RuntimeError("A production pass is already in flight")

        rng = None
        if self._producer.needs_rng:
            seed = rng_rand()
            rng  = np.random.default_rng(seed)
            log.debug("Prefetch RNG seeded with %d", seed)

        buf, self._buffer = self._buffer, None
        self._future = self._executor.submit(self._produce, buf, rng)

    def _produce(self, buf: PrefetchBuffer, rng: Optional[np.random.Generator]) -> PrefetchBuffer:
        t0 = time.perf_counter()
        with trace("produce_batch", "prefetch"):
            self._producer.fill(buf, rng)
        registry = get_registry()
        if registry:
            registry.inc("batches_produced", 1)
            registry.inc("produce_time_ms", int((time.perf_counter() - t0) * 1000))
        return buf

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def acquire(self, data_out: torch.Tensor, label_out: Optional[torch.Tensor] = None) -> None:
        """
        Wait for the in-flight batch, copy it into ``data_out`` /
        ``label_out`` and relaunch production before returning.
        """
        if not self._consumer_lock.acquire(blocking=False):
            raise RuntimeError("acquire() called concurrently from two consumers")
        try:
            self._check_outputs(data_out, label_out)
            if self._future is None:
                raise PrefetchError(f"Nothing to acquire: scheduler is {self.state.value}")

            t0 = time.perf_counter()
            with trace("acquire_wait", "prefetch"):
                future, self._future = self._future, None
                try:
                    buf = future.result()
                except BaseException:
                    self._failed = True
                    raise
            wait_ms = (time.perf_counter() - t0) * 1000

            with trace("copy_batch", "prefetch"):
                data_out.copy_(buf.data)
                if label_out is not None:
                    label_out.copy_(buf.label)

            self._buffer = buf
            self.launch()

            registry = get_registry()
            if registry:
                registry.inc("batches_acquired", 1)
                registry.inc("acquire_wait_ms", int(wait_ms))
                registry.set("last_wait_ms", wait_ms)
                registry.heartbeat()
        finally:
            self._consumer_lock.release()

    def _check_outputs(self, data_out: torch.Tensor, label_out: Optional[torch.Tensor]) -> None:
        if tuple(data_out.shape) != self._data_shape:
            raise ValueError(
                f"data_out has shape {tuple(data_out.shape)}, expected {self._data_shape}"
            )
        if label_out is not None:
            if self._label_shape is None:
                raise ValueError("label_out given but this loader produces no labels")
            if tuple(label_out.shape) != self._label_shape:
                raise ValueError(
                    f"label_out has shape {tuple(label_out.shape)}, expected {self._label_shape}"
                )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Join any in-flight pass and stop the worker thread.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        if self._future is not None:
            exc = self._future.exception()
            if exc is not None:
                log.warning("Discarding failed prefetch pass at shutdown: %s", exc)
            self._future = None
