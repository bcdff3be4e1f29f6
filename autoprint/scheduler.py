"""
In-process job scheduler for event processing.

Each pending event gets exactly one APScheduler date job firing at its
scheduled time. The scheduled_jobs table is the durable record; the
timers held here are rebuilt from it on startup by recover_jobs().
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from autoprint.database import EventStore
from autoprint.models import JobStatus, to_iso, utcnow
from autoprint.retry import RetryController

logger = logging.getLogger(__name__)


@dataclass
class TimerHandle:
    """A live timer for one event."""
    event_id: str
    run_at: datetime
    job_id: str
    running: bool = False


class JobScheduler:
    """
    Owns the event_id -> timer map.

    An event is "tracked" from the moment its timer is registered until its
    execution has finished, so a discovery cycle running concurrently with
    an execution never arms a second timer for the same event.
    """

    def __init__(
        self,
        store: EventStore,
        retry_controller: RetryController,
        timers: BaseScheduler,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the job scheduler.

        Args:
            store: Durable event/job store
            retry_controller: Runs one job attempt and records the outcome
            timers: APScheduler instance the date jobs are added to
            clock: Source of the current UTC time
        """
        self.store = store
        self.retry_controller = retry_controller
        self.timers = timers
        self._clock = clock
        self._handles: Dict[str, TimerHandle] = {}
        self._lock = threading.Lock()
        self._sequence = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Timer bookkeeping
    # ------------------------------------------------------------------

    def _remove_timer(self, handle: TimerHandle):
        try:
            self.timers.remove_job(handle.job_id)
        except JobLookupError:
            # Already fired or already removed
            pass

    def _register(self, event_id: str, run_at: datetime) -> Optional[TimerHandle]:
        """Arm the single timer for an event, replacing any pending one."""
        with self._lock:
            if self._closed:
                logger.warning(f"Scheduler closed, not scheduling event {event_id}")
                return None

            existing = self._handles.get(event_id)
            if existing is not None:
                self._remove_timer(existing)

            # Ids are unique per registration so a fired date job being
            # cleaned up by APScheduler can never remove its replacement
            self._sequence += 1
            job_id = f"event-{event_id}-{self._sequence}"
            self.timers.add_job(
                self.fire,
                'date',
                run_date=run_at,
                args=[event_id],
                id=job_id,
                name=f"process event {event_id}",
                replace_existing=True,
                misfire_grace_time=None,
                max_instances=1,
            )
            handle = TimerHandle(event_id=event_id, run_at=run_at, job_id=job_id)
            self._handles[event_id] = handle

        logger.info(f"Scheduled event {event_id} for {to_iso(run_at)}")
        return handle

    def tracked_event_ids(self) -> Set[str]:
        with self._lock:
            return set(self._handles)

    def timer_for(self, event_id: str) -> Optional[TimerHandle]:
        with self._lock:
            return self._handles.get(event_id)

    def tracked_count(self) -> int:
        with self._lock:
            return len(self._handles)

    def is_tracked(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._handles

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_all_pending(self, config) -> int:
        """
        Arm a timer for every pending event that does not have one.

        Safe to call repeatedly: tracked events are skipped and the job row
        is created at most once per event.

        Args:
            config: Provides lead_offset_minutes and late_grace_minutes

        Returns:
            Number of timers registered
        """
        lead_offset = timedelta(minutes=config.lead_offset_minutes)
        grace = timedelta(minutes=config.late_grace_minutes)
        scheduled = 0

        for event in self.store.get_pending_events():
            if self.is_tracked(event.id):
                continue

            try:
                now = self._clock()
                job = self.store.ensure_job(event.id, event.start_time - lead_offset, now=now)
                if job.status.is_terminal:
                    logger.debug(f"Job for event {event.id} already {job.status.value}, skipping")
                    continue

                run_at = job.scheduled_time
                if run_at <= now:
                    if now > event.start_time + grace:
                        message = (
                            f"Missed processing window: event started at {to_iso(event.start_time)} "
                            f"and the {config.late_grace_minutes} minute grace period has passed"
                        )
                        logger.error(f"Event {event.id} ({event.name}): {message}")
                        self.store.fail_job(event.id, message, now=now)
                        continue
                    logger.warning(
                        f"Scheduled time for event {event.name} (ID: {event.id}) has passed, "
                        f"processing now"
                    )
                    run_at = now

                if self._register(event.id, run_at) is not None:
                    scheduled += 1
            except Exception as e:
                logger.error(f"Failed to schedule event {event.id}: {e}")

        if scheduled:
            logger.info(f"Scheduled {scheduled} new event job(s)")
        return scheduled

    def recover_jobs(self) -> int:
        """
        Rebuild timers from the durable job table after a restart.

        Re-arms every scheduled, retrying or interrupted (processing) job
        whose event is still pending, at its stored scheduled_time or
        immediately when that time has passed. The stored row is left as is.

        Returns:
            Number of timers re-armed
        """
        with self._lock:
            stale = list(self._handles.values())
            self._handles.clear()
        for handle in stale:
            self._remove_timer(handle)

        jobs = self.store.get_recoverable_jobs()
        if not jobs:
            logger.info("No jobs to recover")
            return 0

        logger.info(f"Recovering {len(jobs)} job(s) from database...")
        recovered = 0
        now = self._clock()
        for job in jobs:
            if job.status == JobStatus.PROCESSING:
                logger.warning(f"Job for event {job.event_id} was interrupted while processing, re-running")
            run_at = max(job.scheduled_time, now)
            if self._register(job.event_id, run_at) is not None:
                recovered += 1

        logger.info(f"✓ Recovered {recovered} job(s)")
        return recovered

    def cancel_job(self, event_id: str) -> bool:
        """Cancel the pending timer for an event. Returns whether one was tracked."""
        with self._lock:
            handle = self._handles.pop(event_id, None)
        if handle is None:
            return False
        self._remove_timer(handle)
        logger.info(f"Cancelled timer for event {event_id}")
        return True

    def cancel_all(self) -> int:
        """Cancel every pending timer. In-flight executions are left to finish."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            self._remove_timer(handle)
        if handles:
            logger.info(f"Cancelled {len(handles)} scheduled job(s)")
        return len(handles)

    def close(self):
        """Stop accepting new timer registrations."""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def fire(self, event_id: str):
        """Timer callback: run one processing attempt for the event."""
        with self._lock:
            handle = self._handles.get(event_id)
            if handle is not None:
                handle.running = True

        try:
            event = self.store.get_event(event_id)
            if event is None:
                logger.warning(f"Event {event_id} no longer exists, skipping")
                return
            if event.is_terminal:
                logger.info(f"Event {event_id} already {event.status.value}, skipping")
                return

            logger.info(f"Processing event: {event.name} (ID: {event.id})")
            self.store.mark_job_processing(event_id, now=self._clock())
            outcome = self.retry_controller.run(event)

            if outcome.status == JobStatus.RETRYING and outcome.retry_at is not None:
                self._register(event_id, outcome.retry_at)
        except Exception:
            logger.exception(f"Unexpected error while processing event {event_id}")
        finally:
            with self._lock:
                if handle is not None and self._handles.get(event_id) is handle:
                    del self._handles[event_id]
                    self._remove_timer(handle)
