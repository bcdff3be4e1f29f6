"""
Service health snapshots.

Collects the state of every component into one dictionary and writes it
to <data_dir>/service-health.json so `autoprint health` can read it from
another process.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from autoprint.config import get_data_dir
from autoprint.models import to_iso, utcnow

logger = logging.getLogger(__name__)


def get_health_file_path() -> Path:
    return get_data_dir() / "service-health.json"


def read_health_file(path: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Load the last written health snapshot, if any."""
    path = path or get_health_file_path()
    if not path.exists():
        return None
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to read health file {path}: {e}")
        return None


class HealthReporter:
    """Builds and persists health snapshots for a running service."""

    def __init__(self, store, cache, breaker, memory_monitor, job_scheduler, health_file: Optional[Path] = None):
        self.store = store
        self.cache = cache
        self.breaker = breaker
        self.memory_monitor = memory_monitor
        self.job_scheduler = job_scheduler
        self.health_file = health_file or get_health_file_path()
        self._started = time.monotonic()

    def snapshot(self) -> Dict[str, Any]:
        database_ok = self.store.check_health()
        breaker = self.breaker.get_status()
        memory = self.memory_monitor.get_stats()

        if not database_ok:
            status = 'unhealthy'
        elif breaker['state'] != 'CLOSED':
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'status': status,
            'timestamp': to_iso(utcnow()),
            'pid': os.getpid(),
            'uptime_seconds': round(time.monotonic() - self._started),
            'database': {
                'healthy': database_ok,
                'counts': self.store.get_status_counts() if database_ok else None,
            },
            'cache': self.cache.get_stats(),
            'circuit_breaker': breaker,
            'memory': memory,
            'scheduled_timers': self.job_scheduler.tracked_count(),
        }

    def write(self) -> Dict[str, Any]:
        """Write a fresh snapshot to the health file and return it."""
        snapshot = self.snapshot()
        try:
            self.health_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.health_file.with_suffix('.tmp')
            with open(tmp_file, 'w') as f:
                json.dump(snapshot, f, indent=2, default=str)
            tmp_file.replace(self.health_file)
        except OSError as e:
            logger.warning(f"Failed to write health file: {e}")
        return snapshot
