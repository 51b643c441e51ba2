"""
prefetch_loader.config
======================
All configuration lives here.  No I/O beyond JSON load/save — pure
dataclasses and enums.

Checks that need to see the data (crop size vs. sample size, mean shape,
HDF5 label width) cannot run here; PrefetchLoader performs them at setup
once the first record has been decoded.
"""

from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

from prefetch_loader.errors import ConfigurationError


# ── Enums ─────────────────────────────────────────────────────────────────────

class Backend(str, enum.Enum):
    """Storage backend kinds."""
    LEVELDB = "leveldb"   # immutable key-ordered store
    LMDB    = "lmdb"      # memory-mapped transactional store
    HDF5    = "hdf5"      # list of HDF5 files with "data" / "label" datasets

    @classmethod
    def parse(cls, value: Union[str, "Backend"]) -> "Backend":
        try:
            return cls(value.lower() if isinstance(value, str) else value)
        except ValueError:
            raise ConfigurationError(
                f"Unknown database backend {value!r}; "
                f"expected one of {[b.value for b in cls]}"
            ) from None


class Phase(str, enum.Enum):
    """Execution phase; TRAIN enables randomized augmentation."""
    TRAIN = "train"
    EVAL  = "eval"

    @classmethod
    def parse(cls, value: Union[str, "Phase"]) -> "Phase":
        try:
            return cls(value.lower() if isinstance(value, str) else value)
        except ValueError:
            raise ConfigurationError(
                f"Unknown phase {value!r}; expected 'train' or 'eval'"
            ) from None


# ── Data layer ────────────────────────────────────────────────────────────────

@dataclass
class DataConfig:
    """
    Setup options for one PrefetchLoader.

    Fields
    ------
    backend       : leveldb | lmdb | hdf5.
    source        : Store directory, or for hdf5 a text file listing HDF5
                    paths (whitespace separated).
    batch_size    : Samples per batch, fixed for the loader's lifetime.
    crop_size     : Square crop edge; 0 disables cropping.
    mirror        : Random horizontal flip (train phase, requires crop).
    scale         : Multiplier applied after mean subtraction (not hdf5).
    label_dim     : Label width; values > 1 only with hdf5.
    rand_skip     : Upper bound for a random number of records skipped once
                    at startup.  Not supported with hdf5.
    mean_file     : BlobProto or .npy mean image; None ⇒ zero mean (not hdf5).
    phase         : train | eval.
    output_labels : Produce a label tensor alongside the data tensor.
    pin_memory    : Allocate prefetch buffers in pinned host memory.
    metrics_job   : Shared-memory metrics namespace; None disables metrics.
    metrics_slot  : Slot index in the metrics block (one per loader/rank).
    """
    backend:       Backend
    source:        str
    batch_size:    int
    crop_size:     int             = 0
    mirror:        bool            = False
    scale:         float           = 1.0
    label_dim:     int             = 1
    rand_skip:     int             = 0
    mean_file:     Optional[str]   = None
    phase:         Phase           = Phase.TRAIN
    output_labels: bool            = True
    pin_memory:    bool            = False
    metrics_job:   Optional[str]   = None
    metrics_slot:  int             = 0

    def __post_init__(self):
        self.backend = Backend.parse(self.backend)
        self.phase   = Phase.parse(self.phase)

        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be ≥ 1, got {self.batch_size}")
        if self.crop_size < 0:
            raise ConfigurationError(f"crop_size must be ≥ 0, got {self.crop_size}")
        if self.rand_skip < 0:
            raise ConfigurationError(f"rand_skip must be ≥ 0, got {self.rand_skip}")
        if self.mirror and self.crop_size == 0:
            raise ConfigurationError(
                "Current implementation requires mirror and crop_size to be "
                "set at the same time."
            )

        if self.output_labels:
            if self.label_dim < 1:
                raise ConfigurationError("label_dim should be 1 or greater")
        elif self.label_dim != 1:
            raise ConfigurationError(
                "label_dim > 1 specified but labels are not even used"
            )

        if self.backend is Backend.HDF5:
            if self.rand_skip:
                raise ConfigurationError(
                    "rand_skip parameter not yet supported for HDF5 backend"
                )
            if self.crop_size:
                raise ConfigurationError(
                    "HDF5 rows are copied verbatim; crop_size/mirror are not supported"
                )
            if self.scale != 1.0 or self.mean_file is not None:
                raise ConfigurationError(
                    "HDF5 rows are copied verbatim; scale/mean_file are not supported"
                )
        elif self.label_dim != 1:
            raise ConfigurationError(
                "label_dim != 1 only supported for HDF5 for now"
            )

    # ── JSON (no pickle) ─────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        d = asdict(self)
        d["backend"] = self.backend.value
        d["phase"]   = self.phase.value
        return d

    def save(self, path: Path) -> None:
        path = Path(path)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2))
        tmp.rename(path)

    @classmethod
    def load(cls, path: Path) -> "DataConfig":
        return cls(**json.loads(Path(path).read_text()))
