"""
Durable event and job store.

SQLite database (via SQLAlchemy Core) holding the two tables the service
cannot lose across restarts:

- events: every discovered event and its lifecycle status
- scheduled_jobs: one row per event describing when its job fires and
  its retry state. This table, not the in-memory timers, is the source
  of truth for what must fire after a restart.

Writes go through with_transaction(), which retries on SQLite busy/locked
errors with short exponential backoff.
"""

import logging
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Any, TypeVar

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    delete,
    event as sa_event,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError

from autoprint.models import (
    Event,
    EventStatus,
    JobStatus,
    ScheduledJob,
    RECOVERABLE_JOB_STATUSES,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

metadata = MetaData()

events_table = Table(
    'events', metadata,
    Column('id', Text, primary_key=True),
    Column('name', Text, nullable=False),
    Column('start_time', Text, nullable=False),
    Column('category', Text),
    Column('status', Text, nullable=False, server_default=EventStatus.PENDING.value),
    Column('retry_count', Integer, nullable=False, server_default='0'),
    Column('created_at', Text, nullable=False),
    Column('processed_at', Text),
    Index('idx_events_status', 'status'),
    Index('idx_events_start_time', 'start_time'),
)

jobs_table = Table(
    'scheduled_jobs', metadata,
    Column('event_id', Text, ForeignKey('events.id', ondelete='CASCADE'), primary_key=True),
    Column('scheduled_time', Text, nullable=False),
    Column('status', Text, nullable=False, server_default=JobStatus.SCHEDULED.value),
    Column('retry_count', Integer, nullable=False, server_default='0'),
    Column('error_message', Text),
    Column('created_at', Text, nullable=False),
    Column('updated_at', Text, nullable=False),
    Index('idx_scheduled_jobs_status', 'status'),
    Index('idx_scheduled_jobs_scheduled_time', 'scheduled_time'),
)

TERMINAL_EVENT_STATUSES = (EventStatus.PROCESSED.value, EventStatus.FAILED.value)


def _percent(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def _is_busy_error(error: OperationalError) -> bool:
    message = str(error.orig if error.orig is not None else error).lower()
    return 'locked' in message or 'busy' in message


class EventStore:
    """
    Concurrency-safe persistence for events and scheduled jobs.

    Safe to share between the discovery cycle and timer callbacks running
    on worker threads: WAL mode lets readers proceed while a writer holds
    the lock, and busy errors are retried.
    """

    def __init__(
        self,
        db_path: str,
        busy_retries: int = 3,
        busy_base_delay: float = 0.1,
        busy_timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Open (and create if needed) the event store.

        Args:
            db_path: Path to the SQLite database file
            busy_retries: Retries after a busy/locked error before giving up
            busy_base_delay: First retry delay in seconds (doubles each retry)
            busy_timeout: SQLite busy timeout per statement in seconds
            sleep: Sleep function (injectable for tests)
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_retries = busy_retries
        self.busy_base_delay = busy_base_delay
        self._sleep = sleep

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={'timeout': busy_timeout, 'check_same_thread': False},
        )
        sa_event.listen(self.engine, 'connect', self._configure_connection)

        metadata.create_all(self.engine)
        logger.info(f"Event store ready at {self.db_path}")

    @staticmethod
    def _configure_connection(dbapi_connection, connection_record):
        """Enable WAL and foreign keys on every new SQLite connection."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # ------------------------------------------------------------------
    # Resilience helpers
    # ------------------------------------------------------------------

    def with_retry(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """
        Run fn, retrying on SQLite busy/locked errors.

        Retries use exponential backoff (100ms, 200ms, 400ms with the
        defaults). Any other error, or a busy error after the last retry,
        propagates.
        """
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except OperationalError as e:
                if not _is_busy_error(e) or attempt >= self.busy_retries:
                    raise
                delay = self.busy_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Database busy, retrying in {delay * 1000:.0f}ms "
                    f"(attempt {attempt}/{self.busy_retries})"
                )
                self._sleep(delay)

    def with_transaction(self, fn: Callable[[Connection], T]) -> T:
        """Run fn(conn) atomically; any exception rolls back every write in it."""
        def run():
            with self.engine.begin() as conn:
                return fn(conn)

        return self.with_retry(run)

    def _read(self, fn: Callable[[Connection], T]) -> T:
        def run():
            with self.engine.connect() as conn:
                return fn(conn)

        return self.with_retry(run)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def insert_events(self, events: Iterable[Event], now: Optional[datetime] = None) -> int:
        """
        Store newly discovered events as pending.

        Existing ids are left untouched, so rediscovering an event never
        changes its status.

        Returns:
            Number of events actually inserted
        """
        created_at = to_iso(now or utcnow())
        rows = [
            {
                'id': str(event.id),
                'name': event.name,
                'start_time': to_iso(event.start_time),
                'category': event.category,
                'status': EventStatus.PENDING.value,
                'retry_count': 0,
                'created_at': created_at,
            }
            for event in events
        ]
        if not rows:
            return 0

        def insert(conn: Connection) -> int:
            inserted = 0
            for row in rows:
                stmt = sqlite_insert(events_table).values(**row).on_conflict_do_nothing(
                    index_elements=['id']
                )
                inserted += conn.execute(stmt).rowcount
            return inserted

        return self.with_transaction(insert)

    def get_event(self, event_id: str) -> Optional[Event]:
        row = self._read(
            lambda conn: conn.execute(
                select(events_table).where(events_table.c.id == event_id)
            ).mappings().first()
        )
        return Event.from_row(row) if row else None

    def get_pending_events(self) -> List[Event]:
        rows = self._read(
            lambda conn: conn.execute(
                select(events_table)
                .where(events_table.c.status == EventStatus.PENDING.value)
                .order_by(events_table.c.start_time)
            ).mappings().all()
        )
        return [Event.from_row(row) for row in rows]

    def list_events(self, status: Optional[EventStatus] = None, limit: Optional[int] = None) -> List[Event]:
        query = select(events_table).order_by(events_table.c.start_time.desc())
        if status is not None:
            query = query.where(events_table.c.status == EventStatus(status).value)
        if limit:
            query = query.limit(limit)
        rows = self._read(lambda conn: conn.execute(query).mappings().all())
        return [Event.from_row(row) for row in rows]

    def update_event_status(self, event_id: str, status: EventStatus, now: Optional[datetime] = None):
        values: Dict[str, Any] = {'status': EventStatus(status).value}
        if status == EventStatus.PROCESSED:
            values['processed_at'] = to_iso(now or utcnow())

        self.with_transaction(
            lambda conn: conn.execute(
                update(events_table).where(events_table.c.id == event_id).values(**values)
            )
        )

    def delete_event(self, event_id: str) -> bool:
        """Delete an event and its job row."""
        def remove(conn: Connection) -> bool:
            conn.execute(delete(jobs_table).where(jobs_table.c.event_id == event_id))
            return conn.execute(delete(events_table).where(events_table.c.id == event_id)).rowcount > 0

        return self.with_transaction(remove)

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _select_job(conn: Connection, event_id: str) -> Optional[ScheduledJob]:
        row = conn.execute(
            select(jobs_table).where(jobs_table.c.event_id == event_id)
        ).mappings().first()
        return ScheduledJob.from_row(row) if row else None

    def ensure_job(self, event_id: str, scheduled_time: datetime, now: Optional[datetime] = None) -> ScheduledJob:
        """
        Create the job row for an event if it does not exist yet.

        Insert-or-ignore on the primary key is the authoritative
        de-duplication: concurrent callers end up with the same single row,
        which is returned as stored.
        """
        stamp = to_iso(now or utcnow())

        def upsert(conn: Connection) -> ScheduledJob:
            stmt = sqlite_insert(jobs_table).values(
                event_id=event_id,
                scheduled_time=to_iso(scheduled_time),
                status=JobStatus.SCHEDULED.value,
                retry_count=0,
                created_at=stamp,
                updated_at=stamp,
            ).on_conflict_do_nothing(index_elements=['event_id'])
            conn.execute(stmt)
            return self._select_job(conn, event_id)

        return self.with_transaction(upsert)

    def get_job(self, event_id: str) -> Optional[ScheduledJob]:
        return self._read(lambda conn: self._select_job(conn, event_id))

    def get_jobs_by_status(self, *statuses: JobStatus) -> List[ScheduledJob]:
        query = select(jobs_table).order_by(jobs_table.c.scheduled_time)
        if statuses:
            query = query.where(jobs_table.c.status.in_([JobStatus(s).value for s in statuses]))
        rows = self._read(lambda conn: conn.execute(query).mappings().all())
        return [ScheduledJob.from_row(row) for row in rows]

    def get_recoverable_jobs(self) -> List[ScheduledJob]:
        """Jobs that must be re-armed after a restart (owning event still pending)."""
        query = (
            select(jobs_table)
            .join(events_table, events_table.c.id == jobs_table.c.event_id)
            .where(jobs_table.c.status.in_([s.value for s in RECOVERABLE_JOB_STATUSES]))
            .where(events_table.c.status == EventStatus.PENDING.value)
            .order_by(jobs_table.c.scheduled_time)
        )
        rows = self._read(lambda conn: conn.execute(query).mappings().all())
        return [ScheduledJob.from_row(row) for row in rows]

    def _set_job_status(self, conn: Connection, event_id: str, status: JobStatus, stamp: str, **values):
        conn.execute(
            update(jobs_table)
            .where(jobs_table.c.event_id == event_id)
            .values(status=JobStatus(status).value, updated_at=stamp, **values)
        )

    def mark_job_processing(self, event_id: str, now: Optional[datetime] = None):
        stamp = to_iso(now or utcnow())
        self.with_transaction(
            lambda conn: self._set_job_status(conn, event_id, JobStatus.PROCESSING, stamp)
        )

    def complete_job(self, event_id: str, now: Optional[datetime] = None) -> ScheduledJob:
        """Mark the job completed and its event processed in one transaction."""
        stamp = to_iso(now or utcnow())

        def complete(conn: Connection) -> ScheduledJob:
            self._set_job_status(conn, event_id, JobStatus.COMPLETED, stamp, error_message=None)
            conn.execute(
                update(events_table)
                .where(events_table.c.id == event_id)
                .values(status=EventStatus.PROCESSED.value, processed_at=stamp)
            )
            return self._select_job(conn, event_id)

        return self.with_transaction(complete)

    def record_job_failure(
        self,
        event_id: str,
        error_message: str,
        policy,
        now: Optional[datetime] = None
    ) -> ScheduledJob:
        """
        Record a failed execution and decide the job's next state.

        Increments retry_count on the job and its event. While the policy
        allows another attempt the job becomes 'retrying' with its
        scheduled_time moved to now + backoff; otherwise the job and the
        event are both marked failed.

        Args:
            event_id: Event whose job failed
            error_message: Error to persist on the job row
            policy: Object with should_retry(retry_count) and delay_for(retry_count)
            now: Current time

        Returns:
            The updated job row
        """
        now = now or utcnow()
        stamp = to_iso(now)

        def record(conn: Connection) -> ScheduledJob:
            job = self._select_job(conn, event_id)
            if job is None:
                raise LookupError(f"No scheduled job for event {event_id}")

            retry_count = job.retry_count + 1
            if policy.should_retry(retry_count):
                self._set_job_status(
                    conn, event_id, JobStatus.RETRYING, stamp,
                    retry_count=retry_count,
                    error_message=error_message,
                    scheduled_time=to_iso(now + policy.delay_for(retry_count)),
                )
                event_values = {'retry_count': retry_count}
            else:
                self._set_job_status(
                    conn, event_id, JobStatus.FAILED, stamp,
                    retry_count=retry_count,
                    error_message=error_message,
                )
                event_values = {'retry_count': retry_count, 'status': EventStatus.FAILED.value}

            conn.execute(
                update(events_table).where(events_table.c.id == event_id).values(**event_values)
            )
            return self._select_job(conn, event_id)

        return self.with_transaction(record)

    def fail_job(self, event_id: str, error_message: str, now: Optional[datetime] = None):
        """Mark a job and its event permanently failed without consuming retries."""
        stamp = to_iso(now or utcnow())

        def fail(conn: Connection):
            self._set_job_status(conn, event_id, JobStatus.FAILED, stamp, error_message=error_message)
            conn.execute(
                update(events_table)
                .where(events_table.c.id == event_id)
                .values(status=EventStatus.FAILED.value)
            )

        self.with_transaction(fail)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_old_events(self, days_to_keep: int = 30, now: Optional[datetime] = None) -> int:
        """
        Remove finished events that started more than days_to_keep ago.

        Pending events are never removed. Orphaned job rows are removed too.

        Returns:
            Number of events deleted
        """
        cutoff = to_iso((now or utcnow()) - timedelta(days=days_to_keep))

        def cleanup(conn: Connection) -> int:
            old_ids = select(events_table.c.id).where(
                events_table.c.start_time < cutoff,
                events_table.c.status.in_(TERMINAL_EVENT_STATUSES),
            )
            conn.execute(delete(jobs_table).where(jobs_table.c.event_id.in_(old_ids)))
            deleted = conn.execute(
                delete(events_table).where(
                    events_table.c.start_time < cutoff,
                    events_table.c.status.in_(TERMINAL_EVENT_STATUSES),
                )
            ).rowcount
            orphans = conn.execute(
                delete(jobs_table).where(jobs_table.c.event_id.not_in(select(events_table.c.id)))
            ).rowcount
            if orphans:
                logger.info(f"Database cleanup: deleted {orphans} orphaned scheduled job(s)")
            return deleted

        deleted = self.with_transaction(cleanup)
        if deleted:
            logger.info(f"Database cleanup: deleted {deleted} event(s) older than {days_to_keep} days")
        return deleted

    def get_status_counts(self) -> Dict[str, Dict[str, int]]:
        """Event and job counts grouped by status."""
        def count(conn: Connection) -> Dict[str, Dict[str, int]]:
            events = conn.execute(
                select(events_table.c.status, func.count()).group_by(events_table.c.status)
            ).all()
            jobs = conn.execute(
                select(jobs_table.c.status, func.count()).group_by(jobs_table.c.status)
            ).all()
            return {
                'events': {status: n for status, n in events},
                'jobs': {status: n for status, n in jobs},
            }

        return self._read(count)

    def get_statistics(self, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Processing statistics over the last `days` days.

        Events are counted by start time and only when they have a job row;
        jobs are counted by creation time.
        """
        now = now or utcnow()
        cutoff = to_iso(now - timedelta(days=days))

        def collect(conn: Connection) -> Dict[str, Any]:
            joined = events_table.join(jobs_table, jobs_table.c.event_id == events_table.c.id)

            event_rows = conn.execute(
                select(events_table.c.status, func.count())
                .select_from(joined)
                .where(events_table.c.start_time >= cutoff)
                .group_by(events_table.c.status)
            ).all()
            events_by_status = {status: n for status, n in event_rows}
            events_total = sum(events_by_status.values())

            job_rows = conn.execute(
                select(jobs_table.c.status, func.count(), func.avg(jobs_table.c.retry_count))
                .where(jobs_table.c.created_at >= cutoff)
                .group_by(jobs_table.c.status)
            ).all()
            jobs_by_status = {
                status: {'count': n, 'avg_retries': round(avg or 0, 2)}
                for status, n, avg in job_rows
            }
            jobs_total = sum(entry['count'] for entry in jobs_by_status.values())
            retried = conn.execute(
                select(func.count()).select_from(jobs_table).where(
                    jobs_table.c.created_at >= cutoff,
                    jobs_table.c.retry_count > 0,
                )
            ).scalar()

            recent = conn.execute(
                select(
                    jobs_table.c.event_id,
                    events_table.c.name,
                    events_table.c.start_time,
                    jobs_table.c.status,
                    jobs_table.c.retry_count,
                    jobs_table.c.error_message,
                    jobs_table.c.updated_at,
                )
                .select_from(jobs_table.outerjoin(events_table, jobs_table.c.event_id == events_table.c.id))
                .order_by(jobs_table.c.updated_at.desc())
                .limit(10)
            ).mappings().all()

            upcoming = conn.execute(
                select(
                    jobs_table.c.event_id,
                    events_table.c.name,
                    events_table.c.start_time,
                    jobs_table.c.scheduled_time,
                    jobs_table.c.status,
                )
                .select_from(joined)
                .where(
                    jobs_table.c.status.in_((JobStatus.SCHEDULED.value, JobStatus.RETRYING.value)),
                    events_table.c.start_time >= to_iso(now),
                )
                .order_by(events_table.c.start_time)
                .limit(20)
            ).mappings().all()

            current = dict(conn.execute(
                select(jobs_table.c.status, func.count()).group_by(jobs_table.c.status)
            ).all())

            return {
                'period': f"Last {days} days",
                'generated_at': to_iso(now),
                'events': {
                    'total': events_total,
                    'by_status': events_by_status,
                    'success_rate': _percent(events_by_status.get(EventStatus.PROCESSED.value, 0), events_total),
                },
                'jobs': {
                    'total': jobs_total,
                    'by_status': jobs_by_status,
                    'required_retries': retried,
                    'retry_rate': _percent(retried, jobs_total),
                },
                'recent_activity': [
                    {
                        'event_id': row['event_id'],
                        'event_name': row['name'],
                        'event_date': row['start_time'],
                        'status': row['status'],
                        'retry_count': row['retry_count'],
                        'error': row['error_message'],
                        'updated_at': row['updated_at'],
                    }
                    for row in recent
                ],
                'upcoming': [
                    {
                        'event_id': row['event_id'],
                        'event_name': row['name'],
                        'event_date': row['start_time'],
                        'scheduled_time': row['scheduled_time'],
                        'status': row['status'],
                    }
                    for row in upcoming
                ],
                'current_status': {
                    'scheduled': current.get(JobStatus.SCHEDULED.value, 0),
                    'retrying': current.get(JobStatus.RETRYING.value, 0),
                    'failed': current.get(JobStatus.FAILED.value, 0),
                },
            }

        return self._read(collect)

    def check_health(self) -> bool:
        try:
            self._read(lambda conn: conn.execute(text("SELECT 1")).scalar())
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def checkpoint(self):
        """Flush the write-ahead log into the main database file."""
        def run(conn: Connection):
            conn.exec_driver_sql("PRAGMA wal_checkpoint(TRUNCATE)")

        self._read(run)
        logger.debug("WAL checkpoint complete")

    def close(self):
        self.engine.dispose()
        logger.info("Event store closed")

