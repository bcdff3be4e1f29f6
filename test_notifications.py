"""
Tests for webhook notifications.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests

from autoprint.config import WebhookConfig
from autoprint.models import Event
from autoprint.notifications import WebhookNotifier, notifier_from_config

EVENT = Event(id="evt-1", name="Club Night", start_time=datetime(2030, 6, 1, 18, tzinfo=timezone.utc))
URL = "https://hooks.example.com/autoprint"


def _notifier(clock, session, **kwargs):
    return WebhookNotifier(URL, session=session, sleep=lambda seconds: None, clock=clock, **kwargs)


def test_event_processed_payload(clock):
    session = MagicMock(headers={})
    notifier = _notifier(clock, session)

    assert notifier.event_processed(EVENT, 12) is True

    session.post.assert_called_once()
    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs['json']
    assert url == URL
    assert session.post.call_args.kwargs['timeout'] == 10
    assert payload['event'] == 'event.processed'
    assert payload['timestamp'].startswith('2030-06-01T12:00:00')
    assert payload['data']['event_id'] == 'evt-1'
    assert payload['data']['attendee_count'] == 12


def test_retries_then_gives_up(clock):
    session = MagicMock(headers={})
    session.post.side_effect = requests.exceptions.ConnectionError("refused")
    delays = []
    notifier = WebhookNotifier(URL, max_retries=2, retry_delay=3, session=session,
                               sleep=delays.append, clock=clock)

    assert notifier.permanent_failure(EVENT, "API Timeout", 3) is False
    assert session.post.call_count == 3
    assert delays == [3, 3]


def test_recovers_on_retry(clock):
    session = MagicMock(headers={})
    ok = MagicMock(status_code=200)
    session.post.side_effect = [requests.exceptions.Timeout("slow"), ok]
    notifier = _notifier(clock, session)

    assert notifier.job_retrying(EVENT, 1, 2, datetime(2030, 6, 1, 12, 5, tzinfo=timezone.utc)) is True
    payload = session.post.call_args.kwargs['json']
    assert payload['event'] == 'job.retrying'
    assert payload['data']['retry_at'].startswith('2030-06-01T12:05:00')


def test_http_error_counts_as_failure(clock):
    session = MagicMock(headers={})
    response = MagicMock(status_code=500)
    response.raise_for_status.side_effect = requests.exceptions.HTTPError("500 Server Error")
    session.post.return_value = response
    notifier = _notifier(clock, session, max_retries=0)

    assert notifier.service_status('started') is False


def test_disabled_or_missing_url_skips(clock):
    session = MagicMock(headers={})

    assert _notifier(clock, session, enabled=False).service_status('started') is False
    assert WebhookNotifier(None, session=session).active is False
    session.post.assert_not_called()


def test_from_config():
    notifier = notifier_from_config(WebhookConfig(enabled=True, url=URL, max_retries=5))

    assert notifier.active is True
    assert notifier.max_retries == 5
    notifier.close()
