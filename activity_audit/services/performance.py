"""
Performance collector.

Samples how long an operation took and what it cost the process.
Duration is always available; memory and CPU are best-effort and
come back as None when the platform cannot provide them.

memory_mb is how far the process's peak resident set grew while
the operation ran, not the peak itself. The peak only ever rises,
so an operation that allocated nothing new reports 0. It is
process-wide: concurrent operations share the growth. Nothing
in here may raise into finalization.
"""

import logging
import sys
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PerformanceMetrics:
    duration_ms: float
    memory_mb: float | None = None
    cpu_pct: float | None = None


def _peak_memory_mb() -> float | None:
    """Peak resident set size of this process, in MB."""
    try:
        import resource
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    except (ImportError, OSError, ValueError):
        return None
    # ru_maxrss is bytes on macOS, kilobytes on Linux
    if sys.platform == "darwin":
        return round(peak / (1024 * 1024), 2)
    return round(peak / 1024, 2)


class PerformanceSample:
    """A running measurement, started before the operation."""

    def __init__(self, timer=time.perf_counter):
        self._timer = timer
        self._wall_start = timer()
        self._cpu_start = time.process_time()
        try:
            self._peak_start = _peak_memory_mb()
        except Exception:
            logger.debug("Memory sampling failed", exc_info=True)
            self._peak_start = None

    def finish(self) -> PerformanceMetrics:
        wall_ms = (self._timer() - self._wall_start) * 1000
        try:
            cpu_ms = (time.process_time() - self._cpu_start) * 1000
            cpu_pct = round(min(100.0, cpu_ms / wall_ms * 100), 2) if wall_ms > 0 else 0.0
        except Exception:
            logger.debug("CPU sampling failed", exc_info=True)
            cpu_pct = None
        memory_mb = None
        try:
            peak_end = _peak_memory_mb()
            if peak_end is not None and self._peak_start is not None:
                memory_mb = round(max(0.0, peak_end - self._peak_start), 2)
        except Exception:
            logger.debug("Memory sampling failed", exc_info=True)
        return PerformanceMetrics(
            duration_ms=round(wall_ms, 3),
            memory_mb=memory_mb,
            cpu_pct=cpu_pct,
        )


class PerformanceCollector:
    """
    Starts samples and judges whether an operation was slow.

    Slow operations are escalated by the interceptor through the
    same security fields the risk scorer writes.
    """

    def __init__(self, slow_operation_ms: int = 1000, timer=time.perf_counter):
        self.slow_operation_ms = slow_operation_ms
        self._timer = timer

    def start(self) -> PerformanceSample:
        return PerformanceSample(self._timer)

    def is_slow(self, metrics: PerformanceMetrics | None) -> bool:
        if metrics is None:
            return False
        return metrics.duration_ms > self.slow_operation_ms
