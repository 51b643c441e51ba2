import numpy as np
import pytest
import torch

from conftest import SHAPE, write_lmdb
from prefetch_loader import (
    ConfigurationError,
    DataConfig,
    DecodeError,
    PrefetchError,
    PrefetchLoader,
    encode_datum,
    set_random_seed,
)
from prefetch_loader.records import Datum, encode_blob
from prefetch_loader.scheduler import State


def _ids(batch) -> list:
    return batch.data[:, 0, 0, 0].int().tolist()


def test_five_records_batch_two_wraps_mid_batch(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(5), batch_size=2)
    with PrefetchLoader(cfg) as loader:
        batches = [loader.next_batch() for _ in range(4)]

    assert [_ids(b) for b in batches] == [[0, 1], [2, 3], [4, 0], [1, 2]]
    assert batches[2].label.view(-1).tolist() == [4.0, 0.0]


def test_leveldb_sequence(make_leveldb):
    cfg = DataConfig(backend="leveldb", source=make_leveldb(3), batch_size=2)
    with PrefetchLoader(cfg) as loader:
        assert [_ids(loader.next_batch()) for _ in range(3)] == [[0, 1], [2, 0], [1, 2]]


def test_output_shapes(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(4), batch_size=3, crop_size=3, mirror=True)
    with PrefetchLoader(cfg) as loader:
        assert loader.data_shape == (3, SHAPE[0], 3, 3)
        assert loader.label_shape == (3, 1, 1, 1)
        for _, (data, label) in zip(range(5), loader):
            assert tuple(data.shape) == (3, SHAPE[0], 3, 3)
            assert label.numel() == 3


def test_no_label_output(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(4), batch_size=2, output_labels=False)
    with PrefetchLoader(cfg) as loader:
        assert loader.label_shape is None
        assert loader.next_batch().label is None


def test_acquire_into_caller_tensors(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(3), batch_size=2, scale=0.5)
    with PrefetchLoader(cfg) as loader:
        data  = torch.full(loader.data_shape, -1.0)
        label = torch.full(loader.label_shape, -1.0)
        loader.acquire(data, label)
        assert torch.all(data[1] == 0.5)
        assert label.view(-1).tolist() == [0.0, 1.0]

        with pytest.raises(ValueError, match="expected"):
            loader.acquire(torch.empty(1, 2, 3, 4))


def test_eval_center_crop_is_reproducible(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(4), batch_size=4,
                     crop_size=2, mirror=True, phase="eval")
    runs = []
    for _ in range(2):
        with PrefetchLoader(cfg) as loader:
            runs.append(loader.next_batch().data)
    assert torch.equal(runs[0], runs[1])


def test_seeded_training_runs_are_reproducible(tmp_path):
    rng = np.random.default_rng(0)
    values = [encode_datum(rng.integers(0, 256, SHAPE, dtype=np.uint8), label=i) for i in range(6)]
    cfg = DataConfig(backend="lmdb", source=write_lmdb(tmp_path / "db", values),
                     batch_size=3, crop_size=3, mirror=True, rand_skip=5)
    runs = []
    for _ in range(2):
        set_random_seed(42)
        with PrefetchLoader(cfg) as loader:
            runs.append([loader.next_batch().data for _ in range(3)])
    set_random_seed(None)
    for a, b in zip(*runs):
        assert torch.equal(a, b)


def test_mean_file_is_subtracted(make_lmdb, tmp_path):
    mean_path = tmp_path / "mean.binaryproto"
    mean_path.write_bytes(encode_blob(np.full(SHAPE, 1.0)))
    cfg = DataConfig(backend="lmdb", source=make_lmdb(2), batch_size=2, mean_file=str(mean_path))
    with PrefetchLoader(cfg) as loader:
        data = loader.next_batch().data
    assert torch.all(data[0] == -1.0)
    assert torch.all(data[1] == 0.0)


def test_mean_shape_mismatch_is_fatal(make_lmdb, tmp_path):
    mean_path = tmp_path / "mean.binaryproto"
    mean_path.write_bytes(encode_blob(np.zeros((1, 4, 5))))
    cfg = DataConfig(backend="lmdb", source=make_lmdb(2), batch_size=2, mean_file=str(mean_path))
    with pytest.raises(ConfigurationError):
        PrefetchLoader(cfg)


def test_crop_on_float_records_fails_at_setup(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(2, dtype=np.float32), batch_size=1, crop_size=2)
    with pytest.raises(DecodeError):
        PrefetchLoader(cfg)


def test_crop_larger_than_sample_fails_at_setup(make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(2), batch_size=1, crop_size=4)
    with pytest.raises(ConfigurationError):
        PrefetchLoader(cfg)


def test_producer_failure_surfaces_on_acquire(tmp_path):
    values = [encode_datum(np.full(SHAPE, i, np.uint8), label=i) for i in range(3)]
    values.append(Datum(channels=2, height=4, width=5, label=3).SerializeToString())
    cfg = DataConfig(backend="lmdb", source=write_lmdb(tmp_path / "db", values), batch_size=2)

    loader = PrefetchLoader(cfg)
    try:
        assert _ids(loader.next_batch()) == [0, 1]
        with pytest.raises(DecodeError):
            loader.next_batch()
        assert loader.state is State.FAILED
        with pytest.raises(PrefetchError):
            loader.next_batch()
    finally:
        loader.close()


# ── HDF5 file set ─────────────────────────────────────────────────────────────

def test_hdf5_batches_accumulate_across_files(make_hdf5):
    cfg = DataConfig(backend="hdf5", source=make_hdf5([3, 2]), batch_size=4)
    with PrefetchLoader(cfg) as loader:
        assert loader.data_shape == (4, 1, 2, 2)
        first, second = loader.next_batch(), loader.next_batch()

    assert _ids(first)  == [0, 1, 2, 10]
    assert _ids(second) == [11, 0, 1, 2]
    assert second.label.view(-1).tolist() == [11.0, 0.0, 1.0, 2.0]


def test_hdf5_multi_dim_labels(tmp_path):
    import h5py
    path = tmp_path / "part.h5"
    with h5py.File(path, "w") as f:
        f["data"]  = np.arange(12, dtype=np.float32).reshape(4, 3)
        f["label"] = np.arange(8, dtype=np.float32).reshape(4, 2)
    listing = tmp_path / "files.txt"
    listing.write_text(str(path))

    cfg = DataConfig(backend="hdf5", source=str(listing), batch_size=2, label_dim=2)
    with PrefetchLoader(cfg) as loader:
        batch = loader.next_batch()
    assert tuple(batch.data.shape) == (2, 3, 1, 1)
    assert tuple(batch.label.shape) == (2, 2, 1, 1)
    assert batch.label.view(2, 2).tolist() == [[0.0, 1.0], [2.0, 3.0]]


def test_hdf5_label_dim_mismatch(make_hdf5):
    cfg = DataConfig(backend="hdf5", source=make_hdf5([2]), batch_size=2, label_dim=3)
    with pytest.raises(ConfigurationError, match="label"):
        PrefetchLoader(cfg)


def test_hdf5_all_files_empty(make_hdf5):
    cfg = DataConfig(backend="hdf5", source=make_hdf5([0, 0]), batch_size=2)
    loader = PrefetchLoader(cfg)
    try:
        with pytest.raises(PrefetchError, match="No rows"):
            loader.next_batch()
    finally:
        loader.close()
