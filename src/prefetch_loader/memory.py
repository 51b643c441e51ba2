"""
prefetch_loader.memory
======================
Batch containers and prefetch buffer allocation.

The prefetch buffer is a pair of float32 CPU tensors (data + label) that
the producer thread fills through NumPy views sharing the same storage.
Ownership is exclusive: the scheduler hands the buffer to the producer
when it launches a pass and takes it back only when the pass completes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import torch

log = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# Batch container
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Batch:
    """
    One consumer-owned batch.

    data  : (batch_size, C, H, W) float32
    label : (batch_size, label_dim, 1, 1) float32, or None without labels
    """
    data:  torch.Tensor
    label: Optional[torch.Tensor]

    def __iter__(self):
        """Convenience: unpack as (data, label)."""
        return iter((self.data, self.label))


# ══════════════════════════════════════════════════════════════════════════════
# Prefetch buffer
# ══════════════════════════════════════════════════════════════════════════════

def _empty(shape: Tuple[int, ...], pin_memory: bool) -> torch.Tensor:
    t = torch.zeros(shape, dtype=torch.float32)
    if pin_memory:
        t = t.pin_memory()
    return t


class PrefetchBuffer:
    """
    Data + label tensors written by the producer, copied out by the consumer.

    ``data_rows`` and ``label_rows`` are NumPy views over the tensors' storage
    so the producer writes without going through torch per sample.
    """

    def __init__(
        self,
        batch_size:   int,
        sample_shape: Tuple[int, int, int],
        label_dim:    Optional[int],
        pin_memory:   bool = False,
    ):
        if pin_memory and not torch.cuda.is_available():
            log.warning("pin_memory requested but CUDA is unavailable — using pageable memory")
            pin_memory = False

        self.batch_size = batch_size
        self.data = _empty((batch_size, *sample_shape), pin_memory)
        self.data_rows: np.ndarray = self.data.numpy()

        self.label: Optional[torch.Tensor] = None
        self.label_rows: Optional[np.ndarray] = None
        if label_dim is not None:
            self.label = _empty((batch_size, label_dim, 1, 1), pin_memory)
            self.label_rows = self.label.numpy().reshape(batch_size, label_dim)

    @property
    def data_shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def label_shape(self) -> Optional[Tuple[int, ...]]:
        return tuple(self.label.shape) if self.label is not None else None
