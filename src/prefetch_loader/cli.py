"""
prefetch_loader.cli
===================
Command-line tools around the loader.

    prefetch-loader inspect lmdb  /data/train_lmdb
    prefetch-loader bench   loader.json --steps 200
    prefetch-loader convert arrays.npz /data/train_lmdb --backend lmdb
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

import lmdb
import numpy as np
from rich.console import Console
from rich.table import Table

from prefetch_loader.backends import HDF5FileSet, open_backend
from prefetch_loader.config   import Backend, DataConfig
from prefetch_loader.loader   import PrefetchLoader
from prefetch_loader.records  import decode_datum, encode_datum

log = logging.getLogger(__name__)

_LMDB_MAP_SIZE = 1 << 40   # 1 TB of address space; the file grows as needed


def inspect_source(backend: str, source: str) -> dict:
    """
    Describe a dataset: sample shape, label width and record count.

    Record stores are walked once, start to wraparound.
    """
    cfg = DataConfig(backend=backend, source=source, batch_size=1)
    with open_backend(cfg) as cursor:
        if isinstance(cursor, HDF5FileSet):
            return {
                "backend":      cfg.backend.value,
                "sample_shape": cursor.sample_shape,
                "label_dim":    cursor.label_dim,
                "files":        cursor.num_files,
            }

        first = decode_datum(cursor.current())
        count = 0
        while cursor.wraps == 0:
            cursor.advance()
            count += 1
        return {
            "backend":      cfg.backend.value,
            "sample_shape": first.shape,
            "label_dim":    1,
            "encoding":     first.encoding,
            "records":      count,
        }


def bench(config_path: str, steps: int) -> float:
    """Acquire ``steps`` batches and return batches per second."""
    cfg = DataConfig.load(Path(config_path))
    with PrefetchLoader(cfg) as loader:
        batch = loader.next_batch()           # warm-up: excludes setup cost
        t0 = time.perf_counter()
        for _ in range(steps):
            loader.acquire(batch.data, batch.label)
        elapsed = time.perf_counter() - t0
    rate = steps / max(elapsed, 1e-9)
    log.info(
        "%d batches of %s in %.2fs — %.1f batches/s",
        steps, tuple(batch.data.shape), elapsed, rate,
    )
    return rate


def convert(npz_path: str, out: str, backend: str) -> int:
    """
    Write the ``data`` (N, C, H, W) and ``label`` (N,) arrays of an .npz as
    serialised Datum records under zero-padded keys.  Returns N.
    """
    arrays = np.load(npz_path)
    data, labels = arrays["data"], arrays["label"]
    if data.ndim != 4 or len(data) != len(labels):
        raise ValueError(f"Expected data (N, C, H, W) and label (N,), got {data.shape} / {labels.shape}")

    records = (
        (f"{i:08d}".encode(), encode_datum(data[i], int(labels[i])))
        for i in range(len(data))
    )
    kind = Backend.parse(backend)
    if kind is Backend.LMDB:
        with lmdb.open(out, map_size=_LMDB_MAP_SIZE) as env:
            with env.begin(write=True) as txn:
                for key, value in records:
                    txn.put(key, value)
    elif kind is Backend.LEVELDB:
        import plyvel
        db = plyvel.DB(out, create_if_missing=True, error_if_exists=True)
        try:
            with db.write_batch() as wb:
                for key, value in records:
                    wb.put(key, value)
        finally:
            db.close()
    else:
        raise ValueError("convert writes record stores only (lmdb, leveldb)")

    log.info("Wrote %d records to %s %s", len(data), kind.value, out)
    return len(data)


def main():
    parser = argparse.ArgumentParser(description="Prefetch loader tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="DEBUG logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("inspect", help="Describe a dataset")
    p.add_argument("backend", choices=[b.value for b in Backend])
    p.add_argument("source",  type=str, help="Store path or HDF5 file list")

    p = subparsers.add_parser("bench", help="Measure loader throughput")
    p.add_argument("config", type=str, help="DataConfig JSON file")
    p.add_argument("--steps", type=int, default=100)

    p = subparsers.add_parser("convert", help="Write an .npz as Datum records")
    p.add_argument("npz",  type=str)
    p.add_argument("out",  type=str)
    p.add_argument("--backend", choices=["lmdb", "leveldb"], default="lmdb")

    args = parser.parse_args()
    logging.basicConfig(
        level   = logging.DEBUG if args.verbose else logging.INFO,
        format  = "%(asctime)s %(levelname)-8s %(name)s %(message)s",
        datefmt = "%H:%M:%S",
    )

    if args.command == "inspect":
        info  = inspect_source(args.backend, args.source)
        table = Table(title=args.source, show_header=False)
        for key, value in info.items():
            table.add_row(key, str(value))
        Console().print(table)
    elif args.command == "bench":
        bench(args.config, args.steps)
    elif args.command == "convert":
        convert(args.npz, args.out, args.backend)


if __name__ == "__main__":
    main()
