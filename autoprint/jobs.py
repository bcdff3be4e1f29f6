"""
Event processing job body.

One attempt re-fetches the event and its attendees, renders the
attendee list and delivers it. Any failure propagates to the retry
controller, which decides whether the attempt is retried.
"""

import logging
import time
import uuid
from typing import Any, Dict

from autoprint.api_client import EventApiClient
from autoprint.delivery import DeliveryTransport
from autoprint.models import Event
from autoprint.rendering import AttendeeListRenderer

logger = logging.getLogger(__name__)


class JobExecutionError(Exception):
    """Raised when an event job cannot produce its document."""
    pass


class EventProcessor:
    """
    Fetch -> render -> deliver pipeline for a single event.

    Knows nothing about scheduling or retries; every call is a full,
    independent attempt.
    """

    def __init__(
        self,
        api_client: EventApiClient,
        renderer: AttendeeListRenderer,
        transport: DeliveryTransport,
        print_mode: str = "email",
        layout: str = "csv"
    ):
        self.api_client = api_client
        self.renderer = renderer
        self.transport = transport
        self.print_mode = print_mode
        self.layout = layout

    def process(self, event: Event) -> Dict[str, Any]:
        """
        Produce and deliver the attendee list for an event.

        Returns:
            Dict with run_id, attendee_count, document path (or None) and elapsed_seconds

        Raises:
            JobExecutionError: If the event details are unusable
            ApiError, CircuitOpenError, DeliveryError: Propagated from the collaborators
        """
        run_id = str(uuid.uuid4())[:8]
        log_prefix = f"[{event.id}:{run_id}]"
        started = time.monotonic()
        logger.info(f"{log_prefix} Starting job for event: {event.name}")

        details = self.api_client.fetch_event_details(event.id)
        if not isinstance(details, dict):
            raise JobExecutionError(f"Unexpected event details payload for event {event.id}")
        details = {'id': event.id, 'name': event.name, **details}

        attendees = self.api_client.fetch_attendees(event.id)
        result = {
            'run_id': run_id,
            'attendee_count': len(attendees),
            'document': None,
        }

        if not attendees:
            logger.warning(f"{log_prefix} No attendees found for event: {event.name}, nothing to print")
        else:
            logger.info(f"{log_prefix} Found {len(attendees)} attendee(s)")
            path = self.renderer.render(details, attendees, self.layout)
            self.transport.deliver(path, self.print_mode, subject=details.get('name') or event.name)
            result['document'] = str(path)

        result['elapsed_seconds'] = round(time.monotonic() - started, 2)
        logger.info(f"{log_prefix} Job finished in {result['elapsed_seconds']}s")
        return result
