"""
Webhook notifications.

Posts a small JSON document for each notable service event:

- event.processed: an attendee list was delivered
- job.retrying: an attempt failed and a retry was scheduled
- job.permanent_failure: retries are exhausted
- service.status: the service started

Notifications never raise; a failed webhook is logged and dropped.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from autoprint.models import Event, to_iso, utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "event-autoprint/0.1"


class WebhookNotifier:
    """Sends notification payloads to a single webhook URL."""

    def __init__(
        self,
        url: Optional[str],
        enabled: bool = True,
        timeout: float = 10,
        max_retries: int = 2,
        retry_delay: float = 2,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the notifier.

        Args:
            url: Webhook URL; notifications are skipped when empty
            enabled: Master switch
            timeout: Per-request timeout in seconds
            max_retries: Extra attempts after the first failed post
            retry_delay: Seconds between attempts
            session: Optional pre-configured requests session
            sleep: Sleep function (injectable for tests)
            clock: Source of the payload timestamp
        """
        self.url = url
        self.enabled = enabled
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock

        self.session = session if session is not None else requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})

    @property
    def active(self) -> bool:
        return bool(self.enabled and self.url)

    def send(self, event_type: str, data: Dict[str, Any]) -> bool:
        """
        Post one notification.

        Returns:
            True if the webhook accepted the payload
        """
        if not self.active:
            return False

        payload = {
            'event': event_type,
            'timestamp': to_iso(self._clock()),
            'data': data,
        }

        for attempt in range(self.max_retries + 1):
            if attempt:
                logger.warning(f"Retrying webhook delivery (attempt {attempt}/{self.max_retries})...")
                self._sleep(self.retry_delay)
            try:
                response = self.session.post(self.url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                logger.info(f"Webhook '{event_type}' sent (Status: {response.status_code})")
                return True
            except requests.exceptions.RequestException as e:
                logger.error(f"Failed to send webhook '{event_type}' to {self.url}: {e}")

        logger.error(f"Webhook '{event_type}' dropped after {self.max_retries} retries")
        return False

    def event_processed(self, event: Event, attendee_count: Optional[int]) -> bool:
        return self.send('event.processed', {
            **_event_data(event),
            'attendee_count': attendee_count or 0,
            'status': 'success',
        })

    def job_retrying(self, event: Event, retry_count: int, max_retries: int,
                     retry_at: Optional[datetime] = None) -> bool:
        return self.send('job.retrying', {
            **_event_data(event),
            'retry_count': retry_count,
            'max_retries': max_retries,
            'retry_at': to_iso(retry_at) if retry_at else None,
            'status': 'retrying',
        })

    def permanent_failure(self, event: Event, error: str, retry_count: int) -> bool:
        return self.send('job.permanent_failure', {
            **_event_data(event),
            'error': error,
            'retries_attempted': retry_count,
            'status': 'permanently_failed',
        })

    def service_status(self, status: str, details: Optional[Dict[str, Any]] = None) -> bool:
        return self.send('service.status', {'status': status, **(details or {})})

    def close(self):
        self.session.close()


def _event_data(event: Event) -> Dict[str, Any]:
    return {
        'event_id': event.id,
        'event_name': event.name,
        'event_date': to_iso(event.start_time),
    }


def notifier_from_config(webhook_config) -> WebhookNotifier:
    return WebhookNotifier(
        url=webhook_config.url,
        enabled=webhook_config.enabled,
        timeout=webhook_config.timeout_seconds,
        max_retries=webhook_config.max_retries,
        retry_delay=webhook_config.retry_delay_seconds,
    )
