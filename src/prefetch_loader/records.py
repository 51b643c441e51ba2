"""
prefetch_loader.records
=======================
Record schema and decoding.

Records in the LevelDB / LMDB stores are serialised ``Datum`` protocol
buffers; mean images are serialised ``BlobProto`` messages (or plain
``.npy`` files).  The message classes are built at import time from a
descriptor, so no generated ``_pb2`` module is shipped.

    message Datum {
      optional int32 channels   = 1;
      optional int32 height     = 2;
      optional int32 width      = 3;
      optional bytes data       = 4;   // uint8 pixels, preferred
      optional int32 label      = 5;
      repeated float float_data = 6;   // fallback encoding
    }

    message BlobProto {
      optional int32 num      = 1;
      optional int32 channels = 2;
      optional int32 height   = 3;
      optional int32 width    = 4;
      repeated float data     = 5 [packed = true];
      repeated float diff     = 6 [packed = true];
    }
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as _ProtoDecodeError

from prefetch_loader.errors import BackendError, ConfigurationError, DecodeError

log = logging.getLogger(__name__)

ENCODING_BYTES = "bytes"
ENCODING_FLOAT = "float"


# ══════════════════════════════════════════════════════════════════════════════
# Schema
# ══════════════════════════════════════════════════════════════════════════════

def _build_schema():
    F = descriptor_pb2.FieldDescriptorProto
    fdp = descriptor_pb2.FileDescriptorProto(
        name    = "prefetch_loader/records.proto",
        package = "prefetch_loader",
        syntax  = "proto2",
    )

    def _add(msg, name, number, ftype, repeated=False, packed=False):
        field = msg.field.add(
            name   = name,
            number = number,
            type   = ftype,
            label  = F.LABEL_REPEATED if repeated else F.LABEL_OPTIONAL,
        )
        if packed:
            field.options.packed = True

    datum = fdp.message_type.add(name="Datum")
    _add(datum, "channels",   1, F.TYPE_INT32)
    _add(datum, "height",     2, F.TYPE_INT32)
    _add(datum, "width",      3, F.TYPE_INT32)
    _add(datum, "data",       4, F.TYPE_BYTES)
    _add(datum, "label",      5, F.TYPE_INT32)
    _add(datum, "float_data", 6, F.TYPE_FLOAT, repeated=True)

    blob = fdp.message_type.add(name="BlobProto")
    _add(blob, "num",      1, F.TYPE_INT32)
    _add(blob, "channels", 2, F.TYPE_INT32)
    _add(blob, "height",   3, F.TYPE_INT32)
    _add(blob, "width",    4, F.TYPE_INT32)
    _add(blob, "data",     5, F.TYPE_FLOAT, repeated=True, packed=True)
    _add(blob, "diff",     6, F.TYPE_FLOAT, repeated=True, packed=True)

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fdp.SerializeToString())
    return (
        message_factory.GetMessageClass(pool.FindMessageTypeByName("prefetch_loader.Datum")),
        message_factory.GetMessageClass(pool.FindMessageTypeByName("prefetch_loader.BlobProto")),
    )


Datum, BlobProto = _build_schema()


# ══════════════════════════════════════════════════════════════════════════════
# Sample
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Sample:
    """One decoded record: (C, H, W) pixels plus its label."""
    pixels:   np.ndarray
    label:    int
    encoding: str

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(self.pixels.shape)


def decode_datum(raw: Union[bytes, memoryview], require_bytes: bool = False) -> Sample:
    """
    Parse one serialised Datum.

    Byte pixels are preferred; ``float_data`` is used only when ``data`` is
    empty.  ``require_bytes`` is set when cropping is enabled, since crops
    are only supported on uint8 data.
    """
    datum = Datum()
    try:
        datum.ParseFromString(bytes(raw))
    except _ProtoDecodeError as exc:
        raise DecodeError(f"Could not parse Datum record: {exc}") from exc

    shape = (datum.channels, datum.height, datum.width)
    size  = shape[0] * shape[1] * shape[2]

    if datum.data:
        if len(datum.data) != size:
            raise DecodeError(
                f"Datum byte payload has {len(datum.data)} values, "
                f"expected {size} for shape {shape}"
            )
        pixels   = np.frombuffer(datum.data, dtype=np.uint8).reshape(shape)
        encoding = ENCODING_BYTES
    elif require_bytes:
        raise DecodeError("Image cropping only supports uint8 data")
    elif len(datum.float_data):
        if len(datum.float_data) != size:
            raise DecodeError(
                f"Datum float payload has {len(datum.float_data)} values, "
                f"expected {size} for shape {shape}"
            )
        pixels   = np.asarray(datum.float_data, dtype=np.float32).reshape(shape)
        encoding = ENCODING_FLOAT
    else:
        raise DecodeError("Datum record has neither byte data nor float_data")

    return Sample(pixels=pixels, label=int(datum.label), encoding=encoding)


def encode_datum(pixels: np.ndarray, label: int = 0) -> bytes:
    """Serialise a (C, H, W) array; uint8 arrays use the byte encoding."""
    pixels = np.asarray(pixels)
    if pixels.ndim != 3:
        raise ValueError(f"Expected a (C, H, W) array, got shape {pixels.shape}")
    c, h, w = pixels.shape
    datum = Datum(channels=c, height=h, width=w, label=int(label))
    if pixels.dtype == np.uint8:
        datum.data = pixels.tobytes()
    else:
        datum.float_data.extend(pixels.astype(np.float32).ravel().tolist())
    return datum.SerializeToString()


# ══════════════════════════════════════════════════════════════════════════════
# Mean image
# ══════════════════════════════════════════════════════════════════════════════

def encode_blob(array: np.ndarray) -> bytes:
    """Serialise a (C, H, W) array as a num=1 BlobProto."""
    array = np.asarray(array, dtype=np.float32)
    c, h, w = array.shape
    blob = BlobProto(num=1, channels=c, height=h, width=w)
    blob.data.extend(array.ravel().tolist())
    return blob.SerializeToString()


def _read_blob(path: Path) -> np.ndarray:
    blob = BlobProto()
    try:
        blob.ParseFromString(path.read_bytes())
    except _ProtoDecodeError as exc:
        raise DecodeError(f"Could not parse mean file {path}: {exc}") from exc
    if blob.num != 1:
        raise ConfigurationError(f"Mean blob must have num == 1, got {blob.num}")
    shape = (blob.channels, blob.height, blob.width)
    if len(blob.data) != shape[0] * shape[1] * shape[2]:
        raise DecodeError(
            f"Mean blob holds {len(blob.data)} values, expected shape {shape}"
        )
    return np.asarray(blob.data, dtype=np.float32).reshape(shape)


def load_mean(path: Union[str, Path], shape: Tuple[int, int, int]) -> np.ndarray:
    """
    Load a mean image and check it against the sample shape.

    ``.npy`` files may hold (C, H, W) or (1, C, H, W); anything else is read
    as a BlobProto.
    """
    path = Path(path)
    log.info("Loading mean file from %s", path)
    try:
        if path.suffix == ".npy":
            mean = np.load(path).astype(np.float32)
            if mean.ndim == 4 and mean.shape[0] == 1:
                mean = mean[0]
        else:
            mean = _read_blob(path)
    except OSError as exc:
        raise BackendError(f"Cannot read mean file {path}: {exc}") from exc

    if tuple(mean.shape) != tuple(shape):
        raise ConfigurationError(
            f"Mean shape {tuple(mean.shape)} does not match sample shape {tuple(shape)}"
        )
    return np.ascontiguousarray(mean)


def zero_mean(shape: Tuple[int, int, int]) -> np.ndarray:
    return np.zeros(shape, dtype=np.float32)
