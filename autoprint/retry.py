"""
Retry and backoff control for event jobs.

The controller runs the job body once per attempt and turns the result
into a durable state transition. Failures never escape as exceptions:
they become either a 'retrying' job with a new fire time or a permanently
'failed' job and event.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Any, Optional

from autoprint.database import EventStore
from autoprint.models import Event, JobOutcome, JobStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    Attempts are numbered from 0; the delay before retry n (n >= 1) is
    base_delay_minutes * 2^(n-1), e.g. 5, 10, 20 minutes.
    """
    max_attempts: int = 3
    base_delay_minutes: float = 5

    def delay_for(self, retry_count: int) -> timedelta:
        if retry_count < 1:
            raise ValueError("retry_count must be at least 1")
        return timedelta(minutes=self.base_delay_minutes * (2 ** (retry_count - 1)))

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts


class RetryController:
    """
    Runs a job attempt and records its outcome.

    Each attempt redoes the whole job (fetch, render, deliver) from scratch.
    """

    def __init__(
        self,
        store: EventStore,
        policy: RetryPolicy,
        job: Callable[[Event], Any],
        clock: Callable[[], datetime] = utcnow,
        notifier=None
    ):
        """
        Initialize the controller.

        Args:
            store: Durable event/job store
            policy: Backoff policy
            job: Job body; returns a result (optionally with 'attendee_count') or raises
            clock: Source of the current UTC time
            notifier: Optional WebhookNotifier told about completions, retries and failures
        """
        self.store = store
        self.policy = policy
        self.job = job
        self._clock = clock
        self.notifier = notifier

    def _notify(self, method: str, *args):
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, method)(*args)
        except Exception as e:
            logger.warning(f"Webhook notification failed (non-fatal): {e}")

    def run(self, event: Event) -> JobOutcome:
        """Execute one attempt for the event and persist the resulting state."""
        try:
            result = self.job(event)
        except Exception as e:
            return self.handle_failure(event, e)

        self.store.complete_job(event.id, now=self._clock())
        attendee_count = result.get('attendee_count') if isinstance(result, dict) else None
        logger.info(f"✓ Job completed successfully for event: {event.name} (ID: {event.id})")
        self._notify('event_processed', event, attendee_count)
        return JobOutcome(
            event_id=event.id,
            status=JobStatus.COMPLETED,
            attendee_count=attendee_count,
        )

    def handle_failure(self, event: Event, error: Exception) -> JobOutcome:
        """Persist a failed attempt and decide between retry and permanent failure."""
        message = str(error) or error.__class__.__name__
        logger.error(f"Error processing event {event.id}: {message}")

        job = self.store.record_job_failure(event.id, message, self.policy, now=self._clock())

        if job.status == JobStatus.RETRYING:
            delay = self.policy.delay_for(job.retry_count)
            logger.warning(
                f"Scheduling retry {job.retry_count}/{self.policy.max_attempts - 1} for event {event.id} "
                f"in {delay.total_seconds() / 60:.0f} minutes..."
            )
            self._notify('job_retrying', event, job.retry_count, self.policy.max_attempts - 1, job.scheduled_time)
            return JobOutcome(
                event_id=event.id,
                status=JobStatus.RETRYING,
                retry_count=job.retry_count,
                retry_at=job.scheduled_time,
                error=message,
            )

        logger.error(f"✗ Event {event.id} permanently failed after {job.retry_count} attempt(s)")
        self._notify('permanent_failure', event, message, job.retry_count)
        return JobOutcome(
            event_id=event.id,
            status=JobStatus.FAILED,
            retry_count=job.retry_count,
            error=message,
        )


def retry_policy_from_config(retry_config) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=retry_config.max_attempts,
        base_delay_minutes=retry_config.base_delay_minutes,
    )
