"""
Shared pytest fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from autoprint.database import EventStore
from autoprint.models import Event


class FakeClock:
    """Controllable UTC wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Controllable monotonic clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.autoprint."""
    data_dir = tmp_path / "data"
    monkeypatch.setenv('AUTOPRINT_DATA_DIR', str(data_dir))
    monkeypatch.delenv('AUTOPRINT_CONFIG_PATH', raising=False)
    monkeypatch.delenv('AUTOPRINT_PID_FILE', raising=False)
    monkeypatch.delenv('AUTOPRINT_LOG_DIR', raising=False)
    monkeypatch.setenv('AUTOPRINT_API_KEY', 'test-key')
    for name in ('PRINTER_EMAIL', 'SMTP_USER', 'EMAIL_FROM'):
        monkeypatch.delenv(name, raising=False)
    return data_dir


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store(tmp_path):
    event_store = EventStore(str(tmp_path / "events.db"), sleep=lambda seconds: None)
    yield event_store
    event_store.close()


@pytest.fixture
def timers():
    """A started but paused scheduler: jobs are registered but never run on their own."""
    scheduler = BackgroundScheduler(timezone=timezone.utc)
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.fixture
def make_event(clock):
    def factory(event_id="evt-1", starts_in_minutes=60, name=None, category=None):
        return Event(
            id=event_id,
            name=name or f"Event {event_id}",
            start_time=clock.now + timedelta(minutes=starts_in_minutes),
            category=category,
        )
    return factory
