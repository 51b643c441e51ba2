"""
prefetch_loader.transform
=========================
Per-sample crop / mirror / mean-subtraction / scaling.

    out[c, h, w] = (raw[c, h + h_off, w + w_off] - mean[c, h + h_off, w + w_off]) * scale

When the window is mirrored the source column is read right-to-left,
``(crop - 1 - w) + w_off``; the mean is always indexed at the same source
position as the pixel it is subtracted from.

Crop offsets
------------
TRAIN : h_off ~ U[0, H - crop), w_off ~ U[0, W - crop), then one fair coin
        for mirroring (in that draw order, from the RNG passed in).
EVAL  : centre crop ((H - crop) // 2, (W - crop) // 2); no RNG, no mirror.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from prefetch_loader.config  import Phase
from prefetch_loader.errors  import ConfigurationError, DecodeError
from prefetch_loader.records import ENCODING_BYTES, Sample

log = logging.getLogger(__name__)


class AugmentationPipeline:
    """
    Transform decoded samples into one slot of the batch buffer.

    Parameters
    ----------
    sample_shape : (C, H, W) of every record in the dataset.
    mean         : float32 array of ``sample_shape``; read-only.
    crop_size    : Square crop edge; 0 copies the full image.
    mirror       : Random horizontal flip in TRAIN (requires crop_size > 0).
    scale        : Applied after mean subtraction.
    phase        : TRAIN draws random offsets, EVAL centre-crops.
    """

    def __init__(
        self,
        sample_shape: Tuple[int, int, int],
        mean:         np.ndarray,
        crop_size:    int   = 0,
        mirror:       bool  = False,
        scale:        float = 1.0,
        phase:        Phase = Phase.TRAIN,
    ):
        self.sample_shape = tuple(int(d) for d in sample_shape)
        self.crop_size    = int(crop_size)
        self.mirror       = bool(mirror)
        self.scale        = np.float32(scale)
        self.phase        = Phase.parse(phase)

        _, height, width = self.sample_shape
        if self.mirror and self.crop_size == 0:
            raise ConfigurationError(
                "Current implementation requires mirror and crop_size to be "
                "set at the same time."
            )
        if self.crop_size and (self.crop_size >= height or self.crop_size >= width):
            raise ConfigurationError(
                f"crop_size {self.crop_size} must be smaller than the sample "
                f"height {height} and width {width}"
            )
        if tuple(mean.shape) != self.sample_shape:
            raise ConfigurationError(
                f"Mean shape {tuple(mean.shape)} does not match sample shape {self.sample_shape}"
            )
        self.mean = np.array(mean, dtype=np.float32)
        self.mean.setflags(write=False)

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        if self.crop_size:
            return (self.sample_shape[0], self.crop_size, self.crop_size)
        return self.sample_shape

    @property
    def needs_rng(self) -> bool:
        return self.phase is Phase.TRAIN and (self.mirror or self.crop_size > 0)

    def crop_offsets(self, rng: Optional[np.random.Generator]) -> Tuple[int, int]:
        _, height, width = self.sample_shape
        c = self.crop_size
        if self.phase is Phase.TRAIN:
            return int(rng.integers(0, height - c)), int(rng.integers(0, width - c))
        return (height - c) // 2, (width - c) // 2

    def transform(
        self,
        sample: Sample,
        rng:    Optional[np.random.Generator],
        out:    np.ndarray,
    ) -> Tuple[int, int, bool]:
        """
        Write the transformed ``sample`` into ``out`` (shape ``output_shape``).

        Returns the (h_off, w_off, mirrored) that were applied.
        """
        if sample.shape != self.sample_shape:
            raise DecodeError(
                f"Record shape {sample.shape} differs from dataset shape {self.sample_shape}"
            )

        if not self.crop_size:
            np.subtract(sample.pixels, self.mean, out=out, dtype=np.float32)
            out *= self.scale
            return 0, 0, False

        if sample.encoding != ENCODING_BYTES:
            raise DecodeError("Image cropping only supports uint8 data")

        h_off, w_off = self.crop_offsets(rng)
        mirrored = (
            self.mirror
            and self.phase is Phase.TRAIN
            and bool(rng.integers(0, 2))
        )

        rows = slice(h_off, h_off + self.crop_size)
        cols = slice(w_off, w_off + self.crop_size)
        pixels = sample.pixels[:, rows, cols]
        mean   = self.mean[:, rows, cols]
        if mirrored:
            pixels = pixels[:, :, ::-1]
            mean   = mean[:, :, ::-1]

        np.subtract(pixels, mean, out=out, dtype=np.float32)
        out *= self.scale
        return h_off, w_off, mirrored
