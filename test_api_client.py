"""
Tests for the remote API client: caching, breaker integration, pagination.
"""

from unittest.mock import MagicMock

import pytest
import requests

from autoprint.api_client import ApiError, EventApiClient, event_categories, normalize_event
from autoprint.cache import TTLCache
from autoprint.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from autoprint.config import CacheConfig


def _response(payload=None, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    if status >= 400:
        error = requests.exceptions.HTTPError(f"{status} error")
        error.response = response
        response.raise_for_status.side_effect = error
    return response


def _client(monotonic, session, threshold=5, sleep=None):
    return EventApiClient(
        base_url="https://api.example.com/",
        api_key="secret",
        timeout=7,
        breaker=CircuitBreaker("EventAPI", threshold=threshold, timeout=60, clock=monotonic),
        cache=TTLCache(clock=monotonic),
        cache_config=CacheConfig(fresh_ttl_seconds=60, stale_ttl_seconds=600),
        page_size=2,
        page_delay=1.0,
        session=session,
        sleep=sleep or (lambda seconds: None),
    )


def test_normalize_event():
    event = normalize_event({
        'id': 42,
        'name': 'Club Night',
        'startDate': '2030-06-01T18:00:00Z',
        'categories': [{'name': 'Social'}, {'name': 'Members'}],
        'venue': 'ignored',
    })

    assert event.id == "42"
    assert event.name == "Club Night"
    assert event.start_time.isoformat() == "2030-06-01T18:00:00+00:00"
    assert event.category == "Social"


def test_normalize_event_requires_start():
    with pytest.raises(ValueError):
        normalize_event({'id': 'x', 'name': 'No date'})


def test_event_categories():
    assert event_categories({'categories': [{'name': 'A'}, {'name': 'B'}]}) == ['A', 'B']
    assert event_categories({'category': 'C'}) == ['C']
    assert event_categories({}) == []


def test_requests_use_auth_and_timeout(monotonic):
    session = requests.Session()
    session.get = MagicMock(return_value=_response({'id': 'e1', 'name': 'E'}))
    client = _client(monotonic, session)

    assert client.fetch_event_details('e1') == {'id': 'e1', 'name': 'E'}

    session.get.assert_called_once_with('https://api.example.com/event/e1', params=None, timeout=7)
    assert session.headers['Authorization'] == 'Bearer secret'


def test_fresh_cache_skips_network(monotonic):
    session = MagicMock(headers={})
    session.get.return_value = _response({'events': [{'id': 1}]})
    client = _client(monotonic, session)

    first = client.fetch_upcoming_events(24)
    monotonic.advance(30)
    second = client.fetch_upcoming_events(24)

    assert first == second == [{'id': 1}]
    assert session.get.call_count == 1


def test_stale_cache_served_when_api_fails(monotonic):
    session = MagicMock(headers={})
    session.get.side_effect = [
        _response({'events': [{'id': 1}]}),
        requests.exceptions.ConnectionError("unreachable"),
    ]
    client = _client(monotonic, session)

    client.fetch_upcoming_events(24)
    monotonic.advance(120)

    assert client.fetch_upcoming_events(24) == [{'id': 1}]
    assert client.breaker.failure_count == 1


def test_error_raised_without_cached_data(monotonic):
    session = MagicMock(headers={})
    session.get.return_value = _response(status=401)
    client = _client(monotonic, session)

    with pytest.raises(ApiError) as exc_info:
        client.fetch_event_details('e1')
    assert exc_info.value.status_code == 401


def test_timeout_counts_as_breaker_failure(monotonic):
    session = MagicMock(headers={})
    session.get.side_effect = requests.exceptions.Timeout("slow")
    client = _client(monotonic, session, threshold=2)

    for _ in range(2):
        with pytest.raises(ApiError):
            client.fetch_event_details('e1')

    assert client.breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        client.fetch_event_details('e1')
    assert session.get.call_count == 2


def test_open_breaker_falls_back_to_stale(monotonic):
    session = MagicMock(headers={})
    session.get.side_effect = [_response({'id': 'e1'}), requests.exceptions.Timeout("slow")]
    client = _client(monotonic, session, threshold=1)
    client.fetch_event_details('e1')

    monotonic.advance(61)
    assert client.fetch_event_details('e1') == {'id': 'e1'}
    assert client.breaker.state == CircuitState.OPEN

    # Breaker now refuses the call outright; stale data still answers
    monotonic.advance(1)
    assert client.fetch_event_details('e1') == {'id': 'e1'}
    assert session.get.call_count == 2


def test_attendees_paginated_and_sorted(monotonic):
    delays = []
    session = MagicMock(headers={})
    session.get.side_effect = [
        _response({'attendees': [{'firstName': 'zoe', 'lastName': 'Adams'},
                                 {'firstName': 'Bob', 'lastName': 'smith'}],
                   'meta': {'total': 3}}),
        _response({'attendees': [{'firstName': 'amy', 'lastName': 'Adams'}],
                   'meta': {'total': 3}}),
    ]
    client = _client(monotonic, session, sleep=delays.append)

    attendees = client.fetch_attendees('e1')

    assert [(a['lastName'], a['firstName']) for a in attendees] == [
        ('Adams', 'amy'), ('Adams', 'zoe'), ('smith', 'Bob')
    ]
    assert session.get.call_count == 2
    assert session.get.call_args_list[1].kwargs['params'] == {'event': 'e1', 'limit': 2, 'offset': 2}
    assert delays == [1.0]


def test_keeps_injected_empty_collaborators(monotonic):
    cache = TTLCache(max_entries=5, clock=monotonic)
    breaker = CircuitBreaker("EventAPI", clock=monotonic)
    cache_config = CacheConfig(fresh_ttl_seconds=10, stale_ttl_seconds=20)
    session = MagicMock(headers={})

    client = EventApiClient(cache=cache, breaker=breaker, cache_config=cache_config, session=session)

    assert len(cache) == 0
    assert client.cache is cache
    assert client.breaker is breaker
    assert client.cache_config is cache_config
    assert client.session is session
