"""
prefetch_loader.monitor.cli
===========================
Live terminal view of prefetch loader metrics.

Usage
-----
::

    python -m prefetch_loader.monitor.cli --job myjob

Attaches read-only to the shared-memory block written by loaders started
with ``DataConfig(metrics_job="myjob")`` and refreshes at ~4 Hz.  Slots
whose heartbeat is older than ``STALE_THRESHOLD_S`` are dimmed so a hung
consumer stands out from an idle one.

The "Starved" column is the share of wall time the consumer spent blocked
in ``acquire()`` since the last refresh — near 0 % means storage keeps up.
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .metrics import MAX_SLOTS, MetricsRegistry

STALE_THRESHOLD_S: int = 10


# ── Formatting helpers ────────────────────────────────────────────────────────

def _bar(value: float, total: float, width: int = 20) -> str:
    if total <= 0:
        return "▒" * width
    ratio  = min(max(value / total, 0.0), 1.0)
    filled = int(ratio * width)
    return "█" * filled + "▒" * (width - filled)


def _is_stale(heartbeat_ts: int, now: float) -> bool:
    return heartbeat_ts > 0 and (now - heartbeat_ts) > STALE_THRESHOLD_S


def _is_empty(m) -> bool:
    return m.batches_produced == 0 and m.batches_acquired == 0 and m.heartbeat_ts == 0


def build_table(data, last_acquired, last_wait, dt: float, now_wall: float) -> Table:
    """One row per live slot: counters plus rates over the last ``dt`` seconds."""
    table = Table(expand=True)
    table.add_column("Slot",        justify="center", style="cyan", width=6)
    table.add_column("Batches/s",   justify="right",  style="blue")
    table.add_column("Acquired",    justify="right")
    table.add_column("Records",     justify="right")
    table.add_column("Wraps",       justify="right",  style="magenta")
    table.add_column("Produce (ms)", justify="right", style="green")
    table.add_column("Starved",     justify="left",   style="red")
    table.add_column("Status",      justify="center")

    for i in range(MAX_SLOTS):
        m = data.slots[i]
        if _is_empty(m):
            continue
        rate    = (m.batches_acquired - last_acquired[i]) / dt
        starved = min((m.acquire_wait_ms - last_wait[i]) / (dt * 1000.0), 1.0)
        per_batch = m.produce_time_ms / max(m.batches_produced, 1)
        stale   = _is_stale(m.heartbeat_ts, now_wall)
        table.add_row(
            str(i),
            f"{rate:.2f}",
            str(m.batches_acquired),
            str(m.records_read),
            str(m.cursor_wraps),
            f"{per_batch:.1f}",
            f"{_bar(starved, 1.0)} {starved * 100:.0f}%",
            "[dim]stale[/dim]" if stale else "[green]●[/green]",
            style="dim" if stale else None,
        )
    return table


# ── Main monitor loop ─────────────────────────────────────────────────────────

def run_monitor(job_id: str, refresh_s: float = 0.25) -> None:
    registry = MetricsRegistry(job_id=job_id, create=False)
    if registry.shm is None:
        print(
            f"[ERROR] Could not connect to shared memory for job '{job_id}'.\n"
            "        Is a loader with metrics_job set running on this host?"
        )
        sys.exit(1)

    last_mono     = time.monotonic()
    last_acquired = [0] * MAX_SLOTS
    last_wait     = [0] * MAX_SLOTS

    try:
        with Live(refresh_per_second=4, screen=True) as live:
            while True:
                now_mono = time.monotonic()
                dt       = max(now_mono - last_mono, 1e-3)
                data     = registry.read_all_slots()
                if data is None:
                    break

                layout = Layout()
                layout.split_column(
                    Layout(name="header", size=3),
                    Layout(name="slots"),
                )
                layout["header"].update(Panel(Text(
                    f"Prefetch Loader Monitor  ·  Job: {job_id}  ·  {time.strftime('%H:%M:%S')}",
                    style="bold white on blue",
                    justify="center",
                )))
                layout["slots"].update(Panel(
                    build_table(data, last_acquired, last_wait, dt, time.time()),
                    title="[bold]Loaders[/bold]",
                ))
                live.update(layout)

                for i in range(MAX_SLOTS):
                    last_acquired[i] = data.slots[i].batches_acquired
                    last_wait[i]     = data.slots[i].acquire_wait_ms
                last_mono = now_mono
                time.sleep(refresh_s)
    except KeyboardInterrupt:
        pass
    finally:
        data = None
        registry.close()


# ── CLI entry point ───────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Real-time prefetch loader monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--job", type=str, default="prefetch",
                        help="Metrics namespace (DataConfig.metrics_job)")
    parser.add_argument("--refresh", type=float, default=0.25,
                        help="Seconds between refreshes")
    args = parser.parse_args()
    run_monitor(args.job, args.refresh)


if __name__ == "__main__":
    main()
