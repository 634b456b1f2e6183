"""Per-turn stream measurements."""
from __future__ import annotations

import time
from dataclasses import dataclass

from .sampler import MemorySampler


@dataclass
class TurnMetrics:
    chunks: int
    chars: int
    first_chunk_s: float | None
    total_s: float
    ram_peak_mb: float | None
    vram_peak_mb: float | None

    @property
    def chars_per_s(self) -> float:
        if self.total_s <= 0:
            return 0.0
        return self.chars / self.total_s


class StreamMeter:
    def __init__(self, sampler: MemorySampler | None = None) -> None:
        self._sampler = sampler
        self._chunks = 0
        self._chars = 0
        self._started: float | None = None
        self._first: float | None = None

    def start(self) -> None:
        self._started = time.perf_counter()
        if self._sampler is not None:
            self._sampler.start()

    def record(self, delta: str) -> None:
        if self._first is None and self._started is not None:
            self._first = time.perf_counter() - self._started
        self._chunks += 1
        self._chars += len(delta)

    def finish(self) -> TurnMetrics:
        total = time.perf_counter() - self._started if self._started is not None else 0.0
        ram_peak: float | None = None
        vram_peak: float | None = None
        if self._sampler is not None:
            ram_peak, vram_peak = self._sampler.stop()
        return TurnMetrics(
            chunks=self._chunks,
            chars=self._chars,
            first_chunk_s=self._first,
            total_s=total,
            ram_peak_mb=ram_peak,
            vram_peak_mb=vram_peak,
        )


class Instrumentation:
    """Builds a meter per turn; memory sampling is off when the interval is not positive."""

    def __init__(self, sampling_interval_ms: int = 0, gpu_index: int | None = None) -> None:
        self._interval = sampling_interval_ms
        self._gpu_index = gpu_index

    def meter(self) -> StreamMeter:
        sampler = MemorySampler(self._interval, self._gpu_index) if self._interval > 0 else None
        return StreamMeter(sampler)
