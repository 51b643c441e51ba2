"""
prefetch_loader.rng
===================
Process-wide random source.

Each production pass gets its own ``numpy.random.Generator`` seeded from
``rng_rand()``; the startup skip count is drawn from it too.  Unless
``set_random_seed`` is called, the source is seeded from OS entropy and
augmentation is not reproducible run to run.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import numpy as np

log = logging.getLogger(__name__)

_LOCK = threading.Lock()
_SOURCE: np.random.Generator = np.random.default_rng()


def set_random_seed(seed: Optional[int]) -> None:
    """Re-seed the process-wide source; None re-seeds from OS entropy."""
    global _SOURCE
    with _LOCK:
        _SOURCE = np.random.default_rng(seed)
    log.debug("Process-wide random source seeded with %s", seed)


def rng_rand() -> int:
    """Draw one unsigned 32-bit integer from the process-wide source."""
    with _LOCK:
        return int(_SOURCE.integers(0, 2**32, dtype=np.uint64))
