"""
prefetch_loader.loader
======================
PrefetchLoader: the single public entry point for training code.

Responsibilities
----------------
- Open the backend, apply the startup skip, derive the sample shape from
  the first record (or the first HDF5 file).
- Load the mean image and build the augmentation pipeline (record stores).
- Allocate the prefetch buffer and start the first production pass.
- Expose the per-step API:
      loader.acquire(data, label)        # caller-owned tensors
      batch = loader.next_batch()        # freshly allocated tensors
      for batch in loader: ...           # endless; the dataset wraps
- Tear everything down in order on close(): join the producer, then
  release backend resources.

What this class does NOT do
----------------------------
- No decoding, augmentation or threading logic of its own; those live in
  records, transform and scheduler.
- It never ends: record stores wrap at their end, so iteration is infinite
  and the caller decides how many steps to take.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional, Tuple

import torch

from prefetch_loader.backends        import BackendCursor, HDF5FileSet, open_backend
from prefetch_loader.config          import DataConfig
from prefetch_loader.errors          import ConfigurationError
from prefetch_loader.memory          import Batch, PrefetchBuffer
from prefetch_loader.monitor.metrics import get_registry, init_registry
from prefetch_loader.records         import decode_datum, load_mean, zero_mean
from prefetch_loader.rng             import rng_rand
from prefetch_loader.scheduler       import PrefetchScheduler, RecordProducer, RowBlockProducer
from prefetch_loader.transform       import AugmentationPipeline

log = logging.getLogger(__name__)


class PrefetchLoader:
    """
    Asynchronous batch loader over a LevelDB, LMDB or HDF5 dataset.

    Parameters
    ----------
    config : DataConfig — backend, source, batch size and augmentation.

    Example
    -------
        cfg = DataConfig(backend="lmdb", source="/data/train_lmdb",
                         batch_size=256, crop_size=227, mirror=True,
                         mean_file="/data/mean.binaryproto")
        with PrefetchLoader(cfg) as loader:
            data  = torch.empty(loader.data_shape)
            label = torch.empty(loader.label_shape)
            for step in range(n_steps):
                loader.acquire(data, label)
                train_step(data, label)
    """

    def __init__(self, config: DataConfig):
        self._cfg = config
        self._scheduler: Optional[PrefetchScheduler] = None

        if config.metrics_job and get_registry() is None:
            init_registry(
                job_id = config.metrics_job,
                create = (config.metrics_slot == 0),
                slot   = config.metrics_slot,
            )

        self._cursor: BackendCursor = open_backend(config)
        try:
            self._setup()
        except BaseException:
            self._cursor.close()
            raise

        log.info(
            "PrefetchLoader ready | backend=%s | phase=%s | data=%s | label=%s",
            config.backend.value, config.phase.value,
            self.data_shape, self.label_shape,
        )

    # ══════════════════════════════════════════════════════════════════════════
    # Setup
    # ══════════════════════════════════════════════════════════════════════════

    def _setup(self) -> None:
        cfg = self._cfg

        # ── Random startup skip (desynchronises loaders on one dataset) ──────
        if cfg.rand_skip:
            skip = rng_rand() % cfg.rand_skip
            log.info("Skipping first %d data points.", skip)
            self._cursor.skip(skip)

        # ── Shape of one data point ───────────────────────────────────────────
        if isinstance(self._cursor, HDF5FileSet):
            self.sample_shape = self._cursor.sample_shape
            if cfg.output_labels and self._cursor.label_dim != cfg.label_dim:
                raise ConfigurationError(
                    f"HDF5 label width {self._cursor.label_dim} does not match "
                    f"label_dim {cfg.label_dim}"
                )
        else:
            first = decode_datum(self._cursor.current(), require_bytes=cfg.crop_size > 0)
            self.sample_shape = first.shape

        # ── Producer ─────────────────────────────────────────────────────────
        if isinstance(self._cursor, HDF5FileSet):
            producer     = RowBlockProducer(self._cursor, self.sample_shape)
            output_shape = self.sample_shape
        else:
            if cfg.mean_file:
                mean = load_mean(cfg.mean_file, self.sample_shape)
            else:
                mean = zero_mean(self.sample_shape)
            pipeline = AugmentationPipeline(
                sample_shape = self.sample_shape,
                mean         = mean,
                crop_size    = cfg.crop_size,
                mirror       = cfg.mirror,
                scale        = cfg.scale,
                phase        = cfg.phase,
            )
            producer     = RecordProducer(self._cursor, pipeline)
            output_shape = pipeline.output_shape

        # ── Buffer + first launch ────────────────────────────────────────────
        buffer = PrefetchBuffer(
            batch_size   = cfg.batch_size,
            sample_shape = output_shape,
            label_dim    = cfg.label_dim if cfg.output_labels else None,
            pin_memory   = cfg.pin_memory,
        )
        log.info("output data size: %s", ",".join(str(d) for d in buffer.data_shape))

        self._scheduler = PrefetchScheduler(
            producer, buffer, name=f"prefetch-{cfg.backend.value}"
        )
        log.debug("Initializing prefetch")
        self._scheduler.launch()

    # ══════════════════════════════════════════════════════════════════════════
    # Public API
    # ══════════════════════════════════════════════════════════════════════════

    @property
    def config(self) -> DataConfig:
        return self._cfg

    @property
    def data_shape(self) -> Tuple[int, ...]:
        return self._scheduler.data_shape

    @property
    def label_shape(self) -> Optional[Tuple[int, ...]]:
        return self._scheduler.label_shape

    @property
    def state(self):
        return self._scheduler.state

    def acquire(self, data: torch.Tensor, label: Optional[torch.Tensor] = None) -> None:
        """Copy the next batch into caller-owned tensors (blocks until ready)."""
        self._scheduler.acquire(data, label)

    def next_batch(self) -> Batch:
        """Return the next batch in newly allocated tensors."""
        batch = Batch(
            data  = torch.empty(self.data_shape, dtype=torch.float32),
            label = torch.empty(self.label_shape, dtype=torch.float32)
                    if self.label_shape is not None else None,
        )
        self._scheduler.acquire(batch.data, batch.label)
        return batch

    def __iter__(self) -> Iterator[Batch]:
        while True:
            yield self.next_batch()

    # ══════════════════════════════════════════════════════════════════════════
    # Teardown
    # ══════════════════════════════════════════════════════════════════════════

    def close(self) -> None:
        """Join the producer, then release the backend.  Idempotent."""
        if self._scheduler is not None:
            self._scheduler.close()
        self._cursor.close()

    def __enter__(self) -> "PrefetchLoader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __del__(self):
        if hasattr(self, "_cursor"):
            self.close()
