"""
prefetch_loader.backends
========================
Backend cursors over the three supported stores.

Capability interface
--------------------
Every backend implements ``BackendCursor``:

    current()  -> bytes   raw payload of the current record
    advance()             next record, wrapping to the first at the end
    skip(n)               advance n times (startup only)
    close()               release resources, idempotent

The variant is chosen once by ``open_backend``; the production loop never
branches on the backend kind again.

Wraparound
----------
Hitting the end of a dataset is normal control flow.  Cursors seek back to
the first record, bump ``wraps`` and carry on; callers never see an
exception for it.

Resource ownership
------------------
Each record-store cursor keeps its handles on one ``contextlib.ExitStack``.
For LMDB the registration order is environment → transaction → cursor, so
unwinding closes the cursor, aborts the read transaction and finally
closes the environment.  The stack is also unwound when opening fails
half-way, so a failed open never leaks an environment.
"""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import List, Tuple

import h5py
import lmdb
import numpy as np

from prefetch_loader.config import Backend, DataConfig
from prefetch_loader.errors import BackendError, ConfigurationError

log = logging.getLogger(__name__)

try:
    import plyvel
    HAS_PLYVEL = True
except ImportError:
    HAS_PLYVEL = False
    log.debug("plyvel not installed — LevelDB backend unavailable")


# ══════════════════════════════════════════════════════════════════════════════
# Interface
# ══════════════════════════════════════════════════════════════════════════════

class BackendCursor:
    """Cyclic forward cursor over an ordered record sequence."""

    kind: Backend

    def __init__(self, source: str):
        self.source = str(source)
        self.wraps  = 0

    def current(self) -> bytes:
        raise NotImplementedError

    def advance(self) -> None:
        raise NotImplementedError

    def skip(self, n: int) -> None:
        for _ in range(n):
            self.advance()

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _wrapped(self) -> None:
        self.wraps += 1
        log.debug("Restarting data prefetching from start of %s", self.source)


# ══════════════════════════════════════════════════════════════════════════════
# LevelDB (immutable snapshot iterator)
# ══════════════════════════════════════════════════════════════════════════════

class LevelDBCursor(BackendCursor):
    """Forward iteration over an immutable snapshot of a LevelDB store."""

    kind = Backend.LEVELDB

    def __init__(self, source: str):
        super().__init__(source)
        if not HAS_PLYVEL:
            raise ImportError("plyvel not installed — cannot open LevelDB sources")

        log.info("Opening leveldb %s", self.source)
        self._stack = contextlib.ExitStack()
        try:
            db = plyvel.DB(self.source, create_if_missing=False, max_open_files=100)
            self._stack.callback(db.close)
            snapshot = db.snapshot()
            self._stack.callback(snapshot.close)
            self._iter = snapshot.iterator(include_key=False)
            self._stack.callback(self._iter.close)
            self._value = self._first()
        except plyvel.Error as exc:
            self._stack.close()
            raise BackendError(f"Failed to open leveldb {self.source}: {exc}") from exc
        except BaseException:
            self._stack.close()
            raise

    def _first(self) -> bytes:
        self._iter.seek_to_start()
        try:
            return next(self._iter)
        except StopIteration:
            raise BackendError(f"leveldb {self.source} holds no records") from None

    def current(self) -> bytes:
        return self._value

    def advance(self) -> None:
        try:
            self._value = next(self._iter)
        except StopIteration:
            self._value = self._first()
            self._wrapped()

    def close(self) -> None:
        self._stack.close()


# ══════════════════════════════════════════════════════════════════════════════
# LMDB (read-only transaction + forward cursor)
# ══════════════════════════════════════════════════════════════════════════════

class LMDBCursor(BackendCursor):
    """
    One long-lived read transaction and one cursor over an LMDB
    environment opened read-only.
    """

    kind = Backend.LMDB

    def __init__(self, source: str):
        super().__init__(source)
        log.info("Opening lmdb %s", self.source)
        self._stack = contextlib.ExitStack()
        try:
            env = self._stack.enter_context(lmdb.open(
                self.source,
                subdir    = Path(self.source).is_dir(),
                readonly  = True,
                lock      = False,
                readahead = False,
            ))
            txn = env.begin(write=False)
            self._stack.callback(txn.abort)
            self._cursor = txn.cursor()
            self._stack.callback(self._cursor.close)
            if not self._cursor.first():
                raise BackendError(f"lmdb {self.source} holds no records")
        except lmdb.Error as exc:
            self._stack.close()
            raise BackendError(f"Failed to open lmdb {self.source}: {exc}") from exc
        except BaseException:
            self._stack.close()
            raise

    def current(self) -> bytes:
        return self._cursor.value()

    def advance(self) -> None:
        if not self._cursor.next():
            if not self._cursor.first():
                raise BackendError(f"lmdb {self.source} lost its records")
            self._wrapped()

    def close(self) -> None:
        self._stack.close()


# ══════════════════════════════════════════════════════════════════════════════
# HDF5 file set (row-block reads)
# ══════════════════════════════════════════════════════════════════════════════

_MIN_DATA_DIM,  _MAX_DATA_DIM  = 2, 4
_MIN_LABEL_DIM, _MAX_LABEL_DIM = 1, 2


def _as_nchw(arr: np.ndarray, filename: str) -> np.ndarray:
    if not _MIN_DATA_DIM <= arr.ndim <= _MAX_DATA_DIM:
        raise BackendError(
            f"{filename}: 'data' must have {_MIN_DATA_DIM}-{_MAX_DATA_DIM} dims, got {arr.ndim}"
        )
    return arr.reshape(arr.shape + (1,) * (4 - arr.ndim))


def _as_rows(arr: np.ndarray, filename: str) -> np.ndarray:
    if not _MIN_LABEL_DIM <= arr.ndim <= _MAX_LABEL_DIM:
        raise BackendError(
            f"{filename}: 'label' must have {_MIN_LABEL_DIM}-{_MAX_LABEL_DIM} dims, got {arr.ndim}"
        )
    return arr.reshape(arr.shape[0], arr.shape[1] if arr.ndim == 2 else 1)


class HDF5FileSet(BackendCursor):
    """
    Ordered list of HDF5 files, each holding row-indexed ``data`` and
    ``label`` datasets.  The position is (current_file, current_row).

    Reads are block oriented (``read_rows``); ``current`` has no meaning
    here and ``skip`` is refused.
    """

    kind = Backend.HDF5

    def __init__(self, source: str):
        super().__init__(source)
        log.info("Loading HDF5 filenames from %s", self.source)
        try:
            self.filenames: List[str] = Path(self.source).read_text().split()
        except OSError as exc:
            raise BackendError(f"Cannot read HDF5 file list {self.source}: {exc}") from exc
        if not self.filenames:
            raise BackendError(f"HDF5 file list {self.source} is empty")
        log.info("Number of files: %d", len(self.filenames))

        self.current_file = 0
        self.current_row  = 0
        self.sample_shape, self.label_dim = self._probe(self.filenames[0])

    @property
    def num_files(self) -> int:
        return len(self.filenames)

    def _probe(self, filename: str) -> Tuple[Tuple[int, int, int], int]:
        """Shape of one data row and width of one label row."""
        try:
            with h5py.File(filename, "r") as f:
                data_shape  = f["data"].shape
                label_shape = f["label"].shape
        except (OSError, KeyError) as exc:
            raise BackendError(f"Failed opening HDF5 file {filename}: {exc}") from exc
        if not _MIN_DATA_DIM <= len(data_shape) <= _MAX_DATA_DIM:
            raise BackendError(f"{filename}: 'data' must have 2-4 dims, got {len(data_shape)}")
        if not _MIN_LABEL_DIM <= len(label_shape) <= _MAX_LABEL_DIM:
            raise BackendError(f"{filename}: 'label' must have 1-2 dims, got {len(label_shape)}")
        row = tuple(data_shape[1:]) + (1,) * (4 - len(data_shape))
        return row, (label_shape[1] if len(label_shape) == 2 else 1)

    def _num_rows(self, filename: str) -> int:
        try:
            with h5py.File(filename, "r") as f:
                return f["data"].shape[0]
        except (OSError, KeyError) as exc:
            raise BackendError(f"Failed opening HDF5 file {filename}: {exc}") from exc

    def read_rows(self, count: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Read up to ``count`` rows from the current position.

        A full read advances the row offset.  A short read means the file is
        exhausted: move to the next file (wrapping after the last) at row 0.
        Returns (data[N, C, H, W], label[N, label_dim]) with N ≤ count.
        """
        filename = self.filenames[self.current_file]
        start    = self.current_row
        log.debug("Loading HDF5 file: %s (rows %d+%d)", filename, start, count)
        try:
            with h5py.File(filename, "r") as f:
                data  = _as_nchw(f["data"][start:start + count], filename)
                label = _as_rows(f["label"][start:start + count], filename)
        except (OSError, KeyError) as exc:
            raise BackendError(f"Failed opening HDF5 file {filename}: {exc}") from exc

        if data.shape[0] != label.shape[0]:
            raise BackendError(
                f"{filename}: read a different number of data points "
                f"({data.shape[0]}) vs. labels ({label.shape[0]})"
            )

        loaded = data.shape[0]
        log.debug("Loaded %d examples from %s", loaded, filename)
        if loaded == count:
            self.current_row += loaded
        else:
            self._next_file()
        return data, label

    def _next_file(self) -> None:
        self.current_file += 1
        if self.current_file == self.num_files:
            self.current_file = 0
            self.wraps += 1
            log.debug("Looping around to first HDF5 file")
        self.current_row = 0

    def current(self) -> bytes:
        raise NotImplementedError("HDF5 reads are block oriented; use read_rows()")

    def advance(self) -> None:
        """Step one row forward, moving to the next file at the end of this one."""
        self.current_row += 1
        if self.current_row >= self._num_rows(self.filenames[self.current_file]):
            self._next_file()

    def skip(self, n: int) -> None:
        if n:
            raise ConfigurationError("rand_skip parameter not yet supported for HDF5 backend")

    def close(self) -> None:
        # Files are opened per read; nothing is held between reads.
        pass


# ══════════════════════════════════════════════════════════════════════════════
# Factory
# ══════════════════════════════════════════════════════════════════════════════

_BACKENDS = {
    Backend.LEVELDB: LevelDBCursor,
    Backend.LMDB:    LMDBCursor,
    Backend.HDF5:    HDF5FileSet,
}


def open_backend(config: DataConfig) -> BackendCursor:
    """Open the cursor for ``config.backend`` positioned at the first record."""
    return _BACKENDS[Backend.parse(config.backend)](config.source)
