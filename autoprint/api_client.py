"""
Remote event API client.

Every HTTP call goes through the circuit breaker with a request-level
timeout, and every read is cached: a fresh cache hit skips the network,
and when the API (or the breaker) refuses, stale cached data is served
instead of failing outright.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from autoprint.cache import TTLCache
from autoprint.circuit_breaker import CircuitBreaker, CircuitOpenError
from autoprint.config import CacheConfig
from autoprint.models import Event, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.helloclub.com"


class ApiError(Exception):
    """Raised when a remote API request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def normalize_event(raw: Dict[str, Any]) -> Event:
    """
    Map a remote event payload onto the fields the scheduler uses.

    Only id, name, start time and category are read; everything else in
    the payload is opaque.
    """
    categories = raw.get('categories')
    if isinstance(categories, list) and categories:
        first = categories[0]
        category = first.get('name') if isinstance(first, dict) else str(first)
    else:
        category = raw.get('category')

    start = raw.get('startDate') or raw.get('startTime') or raw.get('start_time')
    if start is None:
        raise ValueError(f"Event {raw.get('id')} has no start time")

    return Event(
        id=str(raw['id']),
        name=raw.get('name') or '',
        start_time=parse_timestamp(start),
        category=category,
    )


def event_categories(raw: Dict[str, Any]) -> List[str]:
    """All category names of a remote event payload."""
    categories = raw.get('categories')
    if isinstance(categories, list):
        return [c.get('name') if isinstance(c, dict) else str(c) for c in categories]
    if raw.get('category'):
        return [raw['category']]
    return []


def _attendee_sort_key(attendee: Dict[str, Any]):
    return (
        (attendee.get('lastName') or '').lower(),
        (attendee.get('firstName') or '').lower(),
    )


class EventApiClient:
    """Client for the remote events API, protected by a circuit breaker and cache."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = 30,
        breaker: Optional[CircuitBreaker] = None,
        cache: Optional[TTLCache] = None,
        cache_config: Optional[CacheConfig] = None,
        page_size: int = 100,
        page_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the client.

        Args:
            base_url: API root URL
            api_key: Bearer token
            timeout: Per-request timeout in seconds (independent of the breaker cooldown)
            breaker: Circuit breaker shared by all calls
            cache: Response cache
            cache_config: TTLs used for cached responses
            page_size: Attendees requested per page
            page_delay: Pause between attendee pages to respect rate limits
            session: Optional pre-configured requests session
            sleep: Sleep function (injectable for tests)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.breaker = breaker if breaker is not None else CircuitBreaker(name="EventAPI")
        self.cache = cache if cache is not None else TTLCache()
        self.cache_config = cache_config if cache_config is not None else CacheConfig()
        self.page_size = page_size
        self.page_delay = page_delay
        self._sleep = sleep

        self.session = session if session is not None else requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if api_key:
            self.session.headers.update({'Authorization': f'Bearer {api_key}'})

    def _make_request(self, path: str, params: Optional[Dict] = None) -> Any:
        """
        Make a single HTTP GET request.

        Returns:
            Decoded JSON body

        Raises:
            ApiError: On timeout, network failure or non-2xx status
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            raise ApiError(f"API Timeout: request to {path} timed out after {self.timeout}s") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 401:
                raise ApiError(
                    f"API Error: 401 Unauthorized for {path}. Check AUTOPRINT_API_KEY.", status
                ) from e
            raise ApiError(f"API Error: {status} for {path}", status) from e
        except requests.exceptions.RequestException as e:
            raise ApiError(f"Network Error: no response for {path}: {e}") from e
        except ValueError as e:
            raise ApiError(f"API Error: invalid JSON from {path}") from e

    def _call(self, path: str, params: Optional[Dict] = None) -> Any:
        return self.breaker.execute(self._make_request, path, params)

    def _cached(self, key: str, fetch: Callable[[], Any], fresh_ttl: float, stale_ttl: float) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            value = fetch()
        except (ApiError, CircuitOpenError) as e:
            stale = self.cache.get_stale(key)
            if stale is not None:
                logger.warning(f"API failed for {key}, using stale cache data (graceful degradation): {e}")
                return stale
            logger.error(f"API failed for {key} and no cached data is available: {e}")
            raise

        self.cache.set(key, value, fresh_ttl, stale_ttl)
        return value

    def fetch_upcoming_events(self, window_hours: float, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch events starting within the next window_hours.

        Returns:
            Raw event payloads sorted by start date
        """
        def fetch():
            from_date = now or utcnow()
            to_date = from_date + timedelta(hours=window_hours)
            data = self._call('/event', {
                'fromDate': to_iso(from_date),
                'toDate': to_iso(to_date),
                'sort': 'startDate',
            })
            events = data.get('events') or []
            logger.info(f"Found {len(events)} upcoming event(s) in the next {window_hours} hours.")
            return events

        return self._cached(
            f"upcoming_events:{window_hours}",
            fetch,
            self.cache_config.fresh_ttl_seconds,
            self.cache_config.stale_ttl_seconds,
        )

    def fetch_event_details(self, event_id: str) -> Dict[str, Any]:
        """Fetch the full, current details of one event."""
        return self._cached(
            f"event:{event_id}",
            lambda: self._call(f'/event/{event_id}'),
            self.cache_config.fresh_ttl_seconds,
            self.cache_config.stale_ttl_seconds,
        )

    def fetch_attendees(self, event_id: str) -> List[Dict[str, Any]]:
        """
        Fetch every attendee of an event, following pagination.

        Returns:
            Attendees sorted by last name, then first name (case-insensitive)
        """
        def fetch():
            attendees: List[Dict[str, Any]] = []
            offset = 0
            while True:
                data = self._call('/eventAttendee', {
                    'event': event_id,
                    'limit': self.page_size,
                    'offset': offset,
                })
                page = data.get('attendees') or []
                if not page:
                    break

                attendees.extend(page)
                offset += len(page)
                total = (data.get('meta') or {}).get('total')
                if total is not None and offset >= total:
                    break
                self._sleep(self.page_delay)

            attendees.sort(key=_attendee_sort_key)
            return attendees

        return self._cached(
            f"attendees:{event_id}",
            fetch,
            self.cache_config.attendees_fresh_ttl_seconds,
            self.cache_config.attendees_stale_ttl_seconds,
        )

    def close(self):
        self.session.close()
