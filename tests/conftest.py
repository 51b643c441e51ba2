"""Tiny on-disk datasets whose pixel values encode the record index."""

from pathlib import Path
from typing import List, Sequence

import h5py
import lmdb
import numpy as np
import pytest

from prefetch_loader.records import encode_datum

SHAPE = (2, 4, 5)


def record_pixels(i: int, shape=SHAPE, dtype=np.uint8) -> np.ndarray:
    return np.full(shape, i % 256, dtype=dtype)


def write_lmdb(path: Path, values: Sequence[bytes]) -> str:
    with lmdb.open(str(path), map_size=1 << 26) as env:
        with env.begin(write=True) as txn:
            for i, value in enumerate(values):
                txn.put(f"{i:08d}".encode(), value)
    return str(path)


def write_hdf5_set(root: Path, rows_per_file: Sequence[int], row_shape=(1, 2, 2)) -> str:
    """File k holds rows with ids 10*k + r; data and label both carry the id."""
    names: List[str] = []
    for k, n_rows in enumerate(rows_per_file):
        ids  = np.arange(n_rows, dtype=np.float32) + 10 * k
        name = root / f"part{k}.h5"
        with h5py.File(name, "w") as f:
            f["data"]  = np.broadcast_to(ids.reshape(-1, *([1] * len(row_shape))),
                                         (n_rows, *row_shape)).copy()
            f["label"] = ids
        names.append(str(name))
    listing = root / "files.txt"
    listing.write_text("\n".join(names) + "\n")
    return str(listing)


@pytest.fixture
def make_lmdb(tmp_path):
    """make_lmdb(n, shape=SHAPE, dtype=np.uint8) -> path of an n-record store."""
    def _make(n: int, shape=SHAPE, dtype=np.uint8, name: str = "db") -> str:
        values = [encode_datum(record_pixels(i, shape, dtype), label=i) for i in range(n)]
        return write_lmdb(tmp_path / name, values)
    return _make


@pytest.fixture
def make_leveldb(tmp_path):
    plyvel = pytest.importorskip("plyvel")

    def _make(n: int, shape=SHAPE) -> str:
        path = tmp_path / "leveldb"
        db = plyvel.DB(str(path), create_if_missing=True)
        for i in range(n):
            db.put(f"{i:08d}".encode(), encode_datum(record_pixels(i, shape), label=i))
        db.close()
        return str(path)
    return _make


@pytest.fixture
def make_hdf5(tmp_path):
    def _make(rows_per_file: Sequence[int], row_shape=(1, 2, 2)) -> str:
        return write_hdf5_set(tmp_path, rows_per_file, row_shape)
    return _make
