import json
import os
from pathlib import Path

import pytest

from prefetch_loader import DataConfig, PrefetchLoader
from prefetch_loader.monitor import metrics, tracing
from prefetch_loader.monitor.cli import build_table
from prefetch_loader.monitor.metrics import MetricsRegistry, get_registry, init_registry


@pytest.fixture
def job_id():
    job = f"test_{os.getpid()}"
    yield job
    registry = get_registry()
    if registry is not None:
        registry.unlink()
    metrics.reset_registry()


def _snapshot(registry: MetricsRegistry, slot: int = 0) -> dict:
    m = registry.read_all_slots().slots[slot]
    values = {name: getattr(m, name) for name, _ in m._fields_}
    del m
    return values


def test_registry_shared_between_writer_and_reader(job_id):
    writer = init_registry(job_id=job_id, create=True, slot=0)
    if writer.shm is None:
        pytest.skip("POSIX shared memory unavailable")

    writer.inc("batches_acquired", 42)
    writer.inc("records_read", 1000)
    writer.set("last_wait_ms", 67.3)
    writer.heartbeat()

    reader = MetricsRegistry(job_id=job_id, create=False)
    values = _snapshot(reader)
    reader.close()

    assert values["batches_acquired"] == 42
    assert values["records_read"] == 1000
    assert abs(values["last_wait_ms"] - 67.3) < 0.01
    assert values["heartbeat_ts"] > 0


def test_missing_block_degrades_to_noop():
    registry = MetricsRegistry(job_id=f"absent_{os.getpid()}", create=False)
    assert registry.shm is None
    assert registry.metrics is None
    registry.inc("records_read", 5)
    registry.heartbeat()
    registry.close()


def test_loader_publishes_counters(job_id, make_lmdb):
    cfg = DataConfig(backend="lmdb", source=make_lmdb(3), batch_size=2, metrics_job=job_id)
    with PrefetchLoader(cfg) as loader:
        if get_registry().shm is None:
            pytest.skip("POSIX shared memory unavailable")
        for _ in range(3):
            loader.next_batch()

    values = _snapshot(get_registry())
    assert values["batches_acquired"] == 3
    assert values["batches_produced"] == 4
    assert values["records_read"] == 8
    assert values["cursor_wraps"] == 2


def test_build_table_skips_empty_slots(job_id):
    registry = init_registry(job_id=job_id, create=True, slot=2)
    if registry.shm is None:
        pytest.skip("POSIX shared memory unavailable")
    registry.inc("batches_acquired", 10)
    registry.inc("batches_produced", 11)

    data  = registry.read_all_slots()
    table = build_table(data, [0] * metrics.MAX_SLOTS, [0] * metrics.MAX_SLOTS, 1.0, 0.0)
    del data
    assert table.row_count == 1


def test_trace_spans_are_written(tmp_path):
    path = tracing.start_tracing(str(tmp_path / "trace"))
    try:
        with tracing.trace("produce_batch"):
            pass
        with tracing.trace("acquire_wait", "consumer"):
            pass
    finally:
        tracing.stop_tracing()

    events = json.loads(Path(path).read_text())
    assert [e["name"] for e in events] == ["produce_batch", "acquire_wait"]
    assert events[1]["cat"] == "consumer"
    assert all(e["ph"] == "X" and e["dur"] >= 0 for e in events)
