"""Background sampler for peak process RSS and GPU memory."""
from __future__ import annotations

import logging
import threading

import psutil

try:
    import pynvml  # provided by nvidia-ml-py
except Exception:  # pragma: no cover
    pynvml = None

logger = logging.getLogger("policychat")

_MB = 1024 * 1024


class MemorySampler:
    """Polls RSS (psutil) and, when NVML is usable, device memory on one thread."""

    def __init__(self, interval_ms: int, gpu_index: int | None) -> None:
        self._interval = interval_ms / 1000.0
        self._gpu_index = gpu_index
        self._rss_peak = 0
        self._vram_peak = 0
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._nvml_handle = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._nvml_handle = self._open_nvml()
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="policychat-sampler", daemon=True)
        self._thread.start()

    def stop(self) -> tuple[float, float | None]:
        """Stop sampling and return ``(ram_peak_mb, vram_peak_mb)``."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
        vram: float | None = None
        if self._nvml_handle is not None:
            vram = self._vram_peak / _MB
            try:
                pynvml.nvmlShutdown()
            except Exception as exc:  # noqa: BLE001
                logger.debug(f"[PolicyChat Metrics] nvmlShutdown failed: {exc}")
            self._nvml_handle = None
        return self._rss_peak / _MB, vram

    def _open_nvml(self):
        if pynvml is None or self._gpu_index is None or self._gpu_index < 0:
            return None
        try:
            pynvml.nvmlInit()
            return pynvml.nvmlDeviceGetHandleByIndex(self._gpu_index)
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"[PolicyChat Metrics] NVML unavailable: {exc}")
            return None

    def _sample(self, proc: psutil.Process) -> None:
        self._rss_peak = max(self._rss_peak, proc.memory_info().rss)
        if self._nvml_handle is not None:
            try:
                used = pynvml.nvmlDeviceGetMemoryInfo(self._nvml_handle).used
            except Exception:  # noqa: BLE001
                return
            self._vram_peak = max(self._vram_peak, used)

    def _run(self) -> None:
        proc = psutil.Process()
        self._sample(proc)
        while not self._stopped.wait(self._interval):
            self._sample(proc)
