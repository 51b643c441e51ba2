import sys

import numpy as np
import pytest

from prefetch_loader import DataConfig, PrefetchLoader, cli


@pytest.fixture
def npz(tmp_path):
    data  = np.stack([np.full((3, 6, 6), i, np.uint8) for i in range(7)])
    label = np.arange(7) * 10
    path  = tmp_path / "arrays.npz"
    np.savez(path, data=data, label=label)
    return str(path)


def test_convert_then_inspect_lmdb(npz, tmp_path):
    out = str(tmp_path / "train_lmdb")
    assert cli.convert(npz, out, "lmdb") == 7

    info = cli.inspect_source("lmdb", out)
    assert info["records"] == 7
    assert info["sample_shape"] == (3, 6, 6)
    assert info["encoding"] == "bytes"


def test_converted_store_feeds_the_loader(npz, tmp_path):
    out = str(tmp_path / "train_lmdb")
    cli.convert(npz, out, "lmdb")
    cfg = DataConfig(backend="lmdb", source=out, batch_size=4, crop_size=4, phase="eval")
    with PrefetchLoader(cfg) as loader:
        batch = loader.next_batch()
    assert tuple(batch.data.shape) == (4, 3, 4, 4)
    assert batch.label.view(-1).tolist() == [0.0, 10.0, 20.0, 30.0]


def test_convert_rejects_hdf5_target(npz, tmp_path):
    with pytest.raises(ValueError, match="record stores"):
        cli.convert(npz, str(tmp_path / "out"), "hdf5")


def test_inspect_hdf5(make_hdf5):
    info = cli.inspect_source("hdf5", make_hdf5([3, 2]))
    assert info == {"backend": "hdf5", "sample_shape": (1, 2, 2), "label_dim": 1, "files": 2}


def test_bench_reports_rate(make_lmdb, tmp_path):
    path = tmp_path / "loader.json"
    DataConfig(backend="lmdb", source=make_lmdb(5), batch_size=2).save(path)
    assert cli.bench(str(path), steps=5) > 0


def test_main_inspect_prints_table(make_lmdb, monkeypatch, capsys):
    source = make_lmdb(4)
    monkeypatch.setattr(sys, "argv", ["prefetch-loader", "inspect", "lmdb", source])
    cli.main()
    out = capsys.readouterr().out
    assert "records" in out
    assert "4" in out
