"""
prefetch_loader
===============
Asynchronous batch loader: one background thread prepares batch N+1 from a
LevelDB, LMDB or HDF5 dataset while the consumer works on batch N.

Public API
----------
    from prefetch_loader import DataConfig, PrefetchLoader

    cfg = DataConfig(backend="lmdb", source="train_lmdb", batch_size=64,
                     crop_size=227, mirror=True)
    with PrefetchLoader(cfg) as loader:
        for step, (data, label) in zip(range(1000), loader):
            ...
"""

from prefetch_loader.config    import Backend, DataConfig, Phase
from prefetch_loader.errors    import BackendError, ConfigurationError, DecodeError, PrefetchError
from prefetch_loader.loader    import PrefetchLoader
from prefetch_loader.memory    import Batch
from prefetch_loader.records   import Sample, decode_datum, encode_datum
from prefetch_loader.rng       import set_random_seed

__all__ = [
    "Backend",
    "Batch",
    "BackendError",
    "ConfigurationError",
    "DataConfig",
    "DecodeError",
    "Phase",
    "PrefetchError",
    "PrefetchLoader",
    "Sample",
    "decode_datum",
    "encode_datum",
    "set_random_seed",
]
