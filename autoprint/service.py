"""
Auto-print service using APScheduler.

Wires the components together and owns the process lifecycle:
- Durable event/job store (SQLite)
- Remote API client behind a circuit breaker and cache
- One date job per pending event, plus periodic maintenance jobs
- PID and info files for status tracking from other processes
"""

import atexit
import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
)

from autoprint.api_client import EventApiClient, event_categories, normalize_event
from autoprint.cache import TTLCache
from autoprint.circuit_breaker import CircuitBreaker
from autoprint.config import ServiceConfig, get_data_dir
from autoprint.database import EventStore
from autoprint.delivery import DeliveryTransport
from autoprint.health import HealthReporter
from autoprint.jobs import EventProcessor
from autoprint.memory_monitor import MemoryMonitor
from autoprint.models import Event, to_iso, utcnow
from autoprint.notifications import notifier_from_config
from autoprint.rendering import AttendeeListRenderer
from autoprint.retry import RetryController, retry_policy_from_config
from autoprint.scheduler import JobScheduler
from autoprint.statistics import reporter_from_config

logger = logging.getLogger(__name__)

PERIODIC_JOB_IDS = (
    'discovery', 'cache-cleanup', 'memory-check', 'health-snapshot', 'heartbeat', 'statistics', 'db-cleanup'
)


def _get_pid_file_path() -> Path:
    """Get the path to the service PID file."""
    pid_path = os.environ.get('AUTOPRINT_PID_FILE')
    if pid_path:
        return Path(pid_path).expanduser()
    return get_data_dir() / "autoprint.pid"


def _get_info_file_path() -> Path:
    """Get the path to the service info file."""
    return get_data_dir() / "service_info.json"


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_service_running() -> Tuple[bool, Optional[int]]:
    """
    Check if the service is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _get_pid_file_path()

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        # Stale PID file, clean it up
        pid_file.unlink()
        return False, None
    except (ValueError, OSError):
        return False, None


def get_service_info() -> Optional[Dict[str, Any]]:
    """
    Get information about the running service.

    Returns:
        Dict with service info or None if not running.
    """
    running, pid = is_service_running()
    if not running:
        return None

    info_file = _get_info_file_path()
    if not info_file.exists():
        return {'pid': pid, 'running': True, 'data_dir': str(get_data_dir())}

    try:
        with open(info_file, 'r') as f:
            info = json.load(f)
        info['running'] = True
        info['pid'] = pid
        return info
    except (json.JSONDecodeError, OSError):
        return {'pid': pid, 'running': True, 'data_dir': str(get_data_dir())}


class AutoPrintService:
    """
    Main service: discovers events and prints their attendee lists on time.

    Uses a BackgroundScheduler for both the per-event timers and the
    periodic maintenance jobs; state that must survive a restart lives in
    the event store.
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        api_client: Optional[EventApiClient] = None,
        transport: Optional[DeliveryTransport] = None
    ):
        """
        Initialize the service.

        Args:
            config: Service configuration (loaded from the default path if None)
            clock: Source of the current UTC time
            api_client: Optional pre-built API client
            transport: Optional pre-built delivery transport
        """
        self.config = config or ServiceConfig()
        self._clock = clock
        self._stop_event = threading.Event()
        self._stopped = False
        self._pid_file: Optional[Path] = None
        self._info_file: Optional[Path] = None

        self.store = EventStore(
            self.config.database.path,
            busy_retries=self.config.database.busy_retries,
            busy_base_delay=self.config.database.busy_base_delay_ms / 1000,
        )

        self.cache = TTLCache(max_entries=self.config.cache.max_entries)
        self.breaker = CircuitBreaker(
            name="EventAPI",
            threshold=self.config.breaker.threshold,
            success_threshold=self.config.breaker.success_threshold,
            timeout=self.config.breaker.timeout_ms / 1000,
        )
        self.api_client = api_client or EventApiClient(
            base_url=self.config.api.base_url,
            api_key=self.config.api.api_key,
            timeout=self.config.api.timeout_seconds,
            breaker=self.breaker,
            cache=self.cache,
            cache_config=self.config.cache,
            page_size=self.config.api.page_size,
            page_delay=self.config.api.page_delay_seconds,
        )

        self.processor = EventProcessor(
            api_client=self.api_client,
            renderer=AttendeeListRenderer(self.config.output_dir),
            transport=transport or DeliveryTransport(self.config.delivery),
            print_mode=self.config.print_mode,
            layout=self.config.layout,
        )
        self.notifier = notifier_from_config(self.config.webhook)
        self.retry_controller = RetryController(
            self.store,
            retry_policy_from_config(self.config.retry),
            self.processor.process,
            clock=clock,
            notifier=self.notifier,
        )
        self.statistics = reporter_from_config(self.store, self.config.statistics, clock=clock)

        executors = {
            'default': ThreadPoolExecutor(self.config.workers)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,  # Prevent concurrent runs of same job
            'misfire_grace_time': 300
        }

        self.scheduler = BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=timezone.utc
        )
        self.job_scheduler = JobScheduler(self.store, self.retry_controller, self.scheduler, clock=clock)

        self.memory_monitor = MemoryMonitor(
            history_size=self.config.memory.history_size,
            rss_warning_mb=self.config.memory.rss_warning_mb,
            leak_growth_mb=self.config.memory.leak_growth_mb,
        )
        self.health = HealthReporter(
            self.store, self.cache, self.breaker, self.memory_monitor, self.job_scheduler
        )

        self._setup_event_listeners()

        logger.info(f"Service initialized with event store: {self.config.database.path}")

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Job '{event.job_id}' executed")

        def job_error_listener(event):
            logger.error(
                f"Job '{event.job_id}' raised exception: {event.exception}",
                exc_info=(type(event.exception), event.exception, event.traceback)
            )

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _accepts(self, raw: Dict[str, Any]) -> bool:
        allowed = self.config.allowed_categories
        if not allowed:
            return True
        return any(category in allowed for category in event_categories(raw))

    def discover_events(self) -> int:
        """
        Fetch upcoming events and store the new ones as pending.

        Returns:
            Number of newly stored events

        Raises:
            ApiError, CircuitOpenError: If the events could not be fetched
        """
        raw_events = self.api_client.fetch_upcoming_events(self.config.fetch_window_hours)

        events: List[Event] = []
        for raw in raw_events:
            if not self._accepts(raw):
                continue
            try:
                events.append(normalize_event(raw))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed event {raw.get('id')}: {e}")

        if not events:
            logger.info("No new events to process")
            return 0

        inserted = self.store.insert_events(events, now=self._clock())
        logger.info(f"Stored {inserted} new event(s) ({len(events) - inserted} already known)")
        return inserted

    def run_discovery_cycle(self) -> int:
        """
        One discovery cycle: fetch and store, then schedule every pending event.

        Fetch failures are logged and do not prevent scheduling of events
        already in the store.

        Returns:
            Number of timers registered
        """
        try:
            self.discover_events()
        except Exception as e:
            logger.error(f"Event discovery failed: {e}")

        return self.job_scheduler.schedule_all_pending(self.config)

    def remove_event(self, event_id: str) -> bool:
        """
        Forget an event: cancel its timer, then delete its event and job rows.

        Returns:
            True if the event existed
        """
        self.job_scheduler.cancel_job(event_id)
        removed = self.store.delete_event(event_id)
        if removed:
            logger.info(f"Removed event {event_id}")
        else:
            logger.warning(f"Event {event_id} not found")
        return removed

    # ------------------------------------------------------------------
    # Periodic jobs
    # ------------------------------------------------------------------

    def check_memory(self):
        self.memory_monitor.check()

    def heartbeat(self):
        breaker = self.breaker.get_status()
        logger.info(
            f"Service heartbeat: {self.job_scheduler.tracked_count()} event timer(s), "
            f"API circuit {breaker['state']}, cache {len(self.cache)} item(s)"
        )

    def cleanup_database(self):
        try:
            self.store.cleanup_old_events(self.config.database.cleanup_days, now=self._clock())
        except Exception as e:
            logger.error(f"Database cleanup failed: {e}")

    def _add_periodic_jobs(self):
        self.scheduler.add_job(
            self.run_discovery_cycle,
            'interval',
            hours=self.config.fetch_interval_hours,
            id='discovery',
            replace_existing=True
        )
        self.scheduler.add_job(
            self.cache.cleanup,
            'interval',
            minutes=self.config.cache.cleanup_interval_minutes,
            id='cache-cleanup',
            replace_existing=True
        )
        self.scheduler.add_job(
            self.check_memory,
            'interval',
            minutes=self.config.memory.interval_minutes,
            id='memory-check',
            replace_existing=True
        )
        self.scheduler.add_job(
            self.health.write,
            'interval',
            seconds=self.config.health_interval_seconds,
            id='health-snapshot',
            replace_existing=True
        )
        self.scheduler.add_job(
            self.heartbeat,
            'interval',
            minutes=15,
            id='heartbeat',
            replace_existing=True
        )
        self.scheduler.add_job(
            self.statistics.report,
            'interval',
            minutes=self.config.statistics.interval_minutes,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=5),
            id='statistics',
            replace_existing=True
        )
        self.scheduler.add_job(
            self.cleanup_database,
            'cron',
            hour=3,
            minute=0,
            id='db-cleanup',
            replace_existing=True
        )
        logger.info(f"Added {len(PERIODIC_JOB_IDS)} periodic job(s)")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Start the service.

        Returns:
            True if started, False if another instance is already running

        Raises:
            ConfigError: If the configuration is invalid
        """
        running, pid = is_service_running()
        if running and pid != os.getpid():
            logger.warning(f"Service is already running (PID: {pid})")
            return False

        logger.info("Starting service...")
        self.config.require_valid()
        self._setup_signal_handlers()
        self._write_pid_file()

        self.job_scheduler.recover_jobs()
        self.scheduler.start()
        self.check_memory()
        self.run_discovery_cycle()
        self._add_periodic_jobs()
        self.health.write()

        if self.notifier.active:
            # Runs once on a worker thread so a slow webhook never delays startup
            self.scheduler.add_job(
                self.notifier.service_status,
                args=['started', {
                    'fetch_interval_hours': self.config.fetch_interval_hours,
                    'fetch_window_hours': self.config.fetch_window_hours,
                    'lead_offset_minutes': self.config.lead_offset_minutes,
                    'print_mode': self.config.print_mode,
                    'scheduled_jobs': self.job_scheduler.tracked_count(),
                }],
                id='service-started-webhook',
                replace_existing=True
            )

        logger.info(
            f"Service started successfully: checking for events every "
            f"{self.config.fetch_interval_hours} hour(s), printing "
            f"{self.config.lead_offset_minutes} minute(s) before start"
        )
        return True

    def run_forever(self):
        """Block until stop() is called or the process is interrupted."""
        try:
            while not self._stop_event.wait(1):
                pass
        except KeyboardInterrupt:
            logger.info("Shutting down...")
            self.stop()

    def _write_pid_file(self):
        """Write the current process PID and service info files."""
        pid_file = self._pid_file = _get_pid_file_path()
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        info_file = self._info_file = _get_info_file_path()
        service_info = {
            'pid': os.getpid(),
            'started_at': to_iso(utcnow()),
            'config_path': str(self.config.config_path),
            'database_path': self.config.database.path,
            'data_dir': str(get_data_dir()),
            'log_file': self.config.logging.file,
            'print_mode': self.config.print_mode,
            'working_directory': os.getcwd(),
        }

        try:
            with open(info_file, 'w') as f:
                json.dump(service_info, f, indent=2)
            logger.debug(f"Wrote service info file: {info_file}")
        except OSError as e:
            logger.warning(f"Failed to write service info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (self._pid_file, self._info_file):
            if path is None:
                continue
            try:
                if path.exists():
                    path.unlink()
                    logger.debug(f"Removed {path}")
            except OSError:
                pass

    def stop(self):
        """
        Stop the service gracefully.

        No new timers are accepted, pending timers are cancelled, in-flight
        jobs are allowed to finish, and the database is checkpointed before
        it is closed.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping service...")

        self.job_scheduler.close()
        self.job_scheduler.cancel_all()

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        try:
            self.store.checkpoint()
        except Exception as e:
            logger.error(f"WAL checkpoint failed during shutdown: {e}")
        self.store.close()
        self.api_client.close()
        self.notifier.close()

        self._remove_pid_file()
        self._stop_event.set()
        logger.info("Service stopped")

    def is_running(self) -> bool:
        return self.scheduler.running and not self._stopped
