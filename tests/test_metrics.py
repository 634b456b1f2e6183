"""
Tests for policychat.metrics.
"""

from unittest.mock import patch

from policychat.metrics import Instrumentation, StreamMeter
from policychat.metrics.sampler import MemorySampler


class TestStreamMeter:
    def test_counts_chunks_and_chars(self):
        meter = StreamMeter()
        with patch("policychat.metrics.instrumentation.time.perf_counter", side_effect=[10.0, 10.5, 12.0]):
            meter.start()
            meter.record("Hi")
            meter.record(" there")
            metrics = meter.finish()

        assert metrics.chunks == 2
        assert metrics.chars == 8
        assert metrics.ram_peak_mb is None
        assert metrics.first_chunk_s == 0.5
        assert metrics.total_s == 2.0
        assert metrics.chars_per_s == 4.0

    def test_no_chunks(self):
        meter = StreamMeter()
        meter.start()

        metrics = meter.finish()

        assert metrics.chunks == 0
        assert metrics.first_chunk_s is None

    def test_zero_duration_rate(self):
        metrics = StreamMeter().finish()

        assert metrics.total_s == 0.0
        assert metrics.chars_per_s == 0.0


class TestInstrumentation:
    def test_sampling_disabled(self):
        meter = Instrumentation(sampling_interval_ms=0).meter()

        assert meter._sampler is None

    def test_sampling_enabled(self):
        meter = Instrumentation(sampling_interval_ms=10, gpu_index=None).meter()

        assert isinstance(meter._sampler, MemorySampler)


class TestMemorySampler:
    def test_reports_rss_without_gpu(self):
        sampler = MemorySampler(interval_ms=5, gpu_index=None)
        sampler.start()

        ram, vram = sampler.stop()

        assert ram > 0
        assert vram is None

    def test_nvml_missing(self):
        with patch("policychat.metrics.sampler.pynvml", None):
            sampler = MemorySampler(interval_ms=5, gpu_index=0)
            sampler.start()
            ram, vram = sampler.stop()

        assert ram > 0
        assert vram is None
