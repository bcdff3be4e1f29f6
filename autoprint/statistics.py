"""
Processing statistics: an hourly log summary plus a JSON report file
for external monitoring.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from autoprint.database import EventStore
from autoprint.models import utcnow

logger = logging.getLogger(__name__)


def format_statistics_summary(stats: Dict[str, Any]) -> str:
    """Render statistics as a multi-line log message."""
    events = stats['events']
    jobs = stats['jobs']
    current = stats['current_status']

    def job_count(status):
        return jobs['by_status'].get(status, {}).get('count', 0)

    return "\n".join([
        f"Statistics Summary ({stats['period']}):",
        f"  Events: {events['total']} total",
        f"  - Processed: {events['by_status'].get('processed', 0)}",
        f"  - Failed: {events['by_status'].get('failed', 0)}",
        f"  - Pending: {events['by_status'].get('pending', 0)}",
        f"  Success Rate: {events['success_rate']}%",
        "",
        f"  Jobs: {jobs['total']} total",
        f"  - Completed: {job_count('completed')}",
        f"  - Failed: {job_count('failed')}",
        f"  - Retrying: {job_count('retrying')}",
        f"  Retry Rate: {jobs['retry_rate']}%",
        "",
        "  Current Status:",
        f"  - Scheduled: {current['scheduled']}",
        f"  - Retrying: {current['retrying']}",
        f"  - Failed: {current['failed']}",
    ])


class StatisticsReporter:
    """Logs a short statistics summary and writes the longer report file."""

    def __init__(
        self,
        store: EventStore,
        report_file: str,
        summary_days: int = 7,
        report_days: int = 30,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.report_file = Path(report_file).expanduser()
        self.summary_days = summary_days
        self.report_days = report_days
        self._clock = clock

    def summary(self) -> str:
        return format_statistics_summary(self.store.get_statistics(self.summary_days, now=self._clock()))

    def write_report(self) -> Dict[str, Any]:
        """Write the report file and return its contents."""
        stats = self.store.get_statistics(self.report_days, now=self._clock())
        self.report_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.report_file.with_suffix('.tmp')
        with open(tmp_file, 'w') as f:
            json.dump(stats, f, indent=2)
        tmp_file.replace(self.report_file)
        logger.info(f"Statistics written to {self.report_file}")
        return stats

    def report(self) -> Optional[Dict[str, Any]]:
        """Periodic job body: log the summary and refresh the report file."""
        try:
            logger.info(self.summary())
            return self.write_report()
        except Exception as e:
            logger.error(f"Statistics report failed: {e}")
            return None


def reporter_from_config(store: EventStore, statistics_config, clock=utcnow) -> StatisticsReporter:
    return StatisticsReporter(
        store,
        statistics_config.file,
        summary_days=statistics_config.summary_days,
        report_days=statistics_config.report_days,
        clock=clock,
    )
