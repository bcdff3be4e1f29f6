"""
Process memory monitoring.

Samples the service's own memory with psutil, keeps a short history and
flags high usage and a sustained upward trend. Observation only: nothing
here frees memory or changes process state.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Any, Optional

import psutil

logger = logging.getLogger(__name__)

MB = 1024 ** 2


@dataclass
class MemorySample:
    """One memory reading, in MB."""
    timestamp: float
    rss_mb: float
    vms_mb: float
    system_percent: float


@dataclass
class MemoryCheck:
    """Result of a single monitor check."""
    usage: MemorySample
    warnings: List[str] = field(default_factory=list)
    healthy: bool = True


def sample_process_memory() -> MemorySample:
    """Read the current process memory usage."""
    process = psutil.Process()
    mem_info = process.memory_info()
    return MemorySample(
        timestamp=time.time(),
        rss_mb=round(mem_info.rss / MB, 1),
        vms_mb=round(mem_info.vms / MB, 1),
        system_percent=psutil.virtual_memory().percent,
    )


class MemoryMonitor:
    """
    Tracks process memory over time.

    A leak is suspected only when the history window is full, RSS never
    decreased across it, and total growth reached leak_growth_mb.
    """

    def __init__(
        self,
        history_size: int = 10,
        rss_warning_mb: float = 400,
        leak_growth_mb: float = 50,
        sampler: Callable[[], MemorySample] = sample_process_memory
    ):
        if history_size < 2:
            raise ValueError("history_size must be at least 2")
        self.history_size = history_size
        self.rss_warning_mb = rss_warning_mb
        self.leak_growth_mb = leak_growth_mb
        self._sampler = sampler
        self._history: deque = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def check(self) -> MemoryCheck:
        """Take a sample, record it and evaluate the thresholds."""
        usage = self._sampler()
        with self._lock:
            self._history.append(usage)
            samples = list(self._history)

        warnings = []
        if usage.rss_mb > self.rss_warning_mb:
            warnings.append(f"High RSS memory: {usage.rss_mb}MB / {self.rss_warning_mb}MB threshold")

        growth = self._leak_growth(samples)
        if growth is not None:
            warnings.append(
                f"Possible memory leak: RSS grew {growth:.1f}MB over the last {len(samples)} samples"
            )

        for warning in warnings:
            logger.warning(warning)
        if not warnings:
            logger.debug(f"Memory OK: RSS {usage.rss_mb}MB, VMS {usage.vms_mb}MB")

        return MemoryCheck(usage=usage, warnings=warnings, healthy=not warnings)

    def _leak_growth(self, samples: List[MemorySample]) -> Optional[float]:
        if len(samples) < self.history_size:
            return None
        rss = [s.rss_mb for s in samples]
        if any(later < earlier for earlier, later in zip(rss, rss[1:])):
            return None
        growth = rss[-1] - rss[0]
        return growth if growth >= self.leak_growth_mb else None

    def history(self) -> List[MemorySample]:
        with self._lock:
            return list(self._history)

    def get_stats(self) -> Dict[str, Any]:
        """Latest sample plus min/max/avg RSS over the history."""
        samples = self.history()
        if not samples:
            return {'current': None, 'samples': 0}

        rss = [s.rss_mb for s in samples]
        return {
            'current': asdict(samples[-1]),
            'samples': len(samples),
            'rss_min_mb': min(rss),
            'rss_max_mb': max(rss),
            'rss_avg_mb': round(sum(rss) / len(rss), 1),
        }
