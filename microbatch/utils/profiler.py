"""
Profiling utilities for micro-batch execution.

This module provides:
- `profile_block`: context manager measuring wall-clock time (perf_counter),
  CPU usage and resident memory (psutil) of one block, e.g. one micro-batch.
- `PhaseTimer`: accumulates per-phase durations (poll, decode, sink, commit)
  inside a profiled batch.

Usage examples:
    from microbatch.utils.profiler import PhaseTimer, profile_block

    timer = PhaseTimer()
    with profile_block("batch-3") as stats:
        with timer.phase("poll"):
            records = source.poll(offset)

    print(stats.duration_seconds, stats.peak_rss_bytes, timer.durations_ms)
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    peak_rss_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)


@contextlib.contextmanager
def profile_block(label: str, measure_resources: bool = True) -> Generator[ProfileStats, None, None]:
    """
    Context manager to profile a block of code.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    measure_resources : bool
        Whether to sample RSS and CPU via psutil at block boundaries.

    Notes
    -----
    RSS is sampled at entry and exit only; the larger value is reported.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process() if measure_resources else None
    rss_start = 0

    if process is not None:
        # CPU percent needs a priming call
        process.cpu_percent(interval=None)
        rss_start = process.memory_info().rss

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts

        if process is not None:
            try:
                stats.peak_rss_bytes = max(rss_start, process.memory_info().rss)
                stats.cpu_percent = process.cpu_percent(interval=None)
            except psutil.Error:
                stats.peak_rss_bytes = rss_start or None


class PhaseTimer:
    """Accumulate wall-clock milliseconds per named phase."""

    def __init__(self) -> None:
        self._durations: Dict[str, float] = {}

    @contextlib.contextmanager
    def phase(self, name: str) -> Generator[None, None, None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            self._durations[name] = self._durations.get(name, 0.0) + elapsed_ms

    @property
    def durations_ms(self) -> Dict[str, float]:
        return {name: round(ms, 3) for name, ms in self._durations.items()}


__all__ = ["PhaseTimer", "ProfileStats", "profile_block"]
