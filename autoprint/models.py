"""
Data models for events and their scheduled jobs.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Mapping


class EventStatus(str, Enum):
    """Event lifecycle states."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Scheduled job lifecycle states."""
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Job states that recovery re-arms after a restart
RECOVERABLE_JOB_STATUSES = (JobStatus.SCHEDULED, JobStatus.RETRYING, JobStatus.PROCESSING)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime for storage (ISO-8601, UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed-width microseconds keep stored values lexically sortable
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored or remote timestamp into an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        # fromisoformat() only accepts a trailing 'Z' from Python 3.11 on
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Event:
    """A remotely-sourced event awaiting attendance processing"""
    id: str
    name: str
    start_time: datetime
    category: Optional[str] = None
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != EventStatus.PENDING

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Event':
        """Create from database row"""
        return cls(
            id=row['id'],
            name=row['name'],
            start_time=parse_timestamp(row['start_time']),
            category=row['category'],
            status=EventStatus(row['status']),
            retry_count=row['retry_count'],
            created_at=parse_timestamp(row['created_at']),
            processed_at=parse_timestamp(row['processed_at'])
        )


@dataclass
class ScheduledJob:
    """Durable record of when and whether an event's processing should fire"""
    event_id: str
    scheduled_time: datetime
    status: JobStatus = JobStatus.SCHEDULED
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'ScheduledJob':
        """Create from database row"""
        return cls(
            event_id=row['event_id'],
            scheduled_time=parse_timestamp(row['scheduled_time']),
            status=JobStatus(row['status']),
            retry_count=row['retry_count'],
            error_message=row['error_message'],
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at'])
        )


@dataclass
class JobOutcome:
    """Result of one job execution as decided by the retry controller"""
    event_id: str
    status: JobStatus
    retry_count: int = 0
    retry_at: Optional[datetime] = None  # Set only when status is RETRYING
    error: Optional[str] = None
    attendee_count: Optional[int] = None
