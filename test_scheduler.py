"""
Tests for per-event timers, recovery and end-to-end job execution.

Timers are registered on a paused APScheduler instance and fired by
calling JobScheduler.fire() directly, with a fake clock standing in for
the passage of time.
"""

from datetime import timedelta
from types import SimpleNamespace

from autoprint.models import EventStatus, JobStatus
from autoprint.retry import RetryController, RetryPolicy
from autoprint.scheduler import JobScheduler

CONFIG = SimpleNamespace(lead_offset_minutes=5, late_grace_minutes=60)


class ScriptedJob:
    """Job body that fails a given number of times before succeeding."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def __call__(self, event):
        self.calls.append(event.id)
        if len(self.calls) <= self.failures:
            raise ConnectionError(f"attempt {len(self.calls)} failed")
        return {'attendee_count': 3}


def _make_scheduler(store, timers, clock, job, max_attempts=3):
    controller = RetryController(store, RetryPolicy(max_attempts, 5), job, clock=clock)
    return JobScheduler(store, controller, timers, clock=clock)


def _next_run(timers, scheduler, event_id):
    handle = scheduler.timer_for(event_id)
    assert handle is not None
    return timers.get_job(handle.job_id).next_run_time


def test_discovery_is_idempotent(store, timers, clock, make_event):
    store.insert_events([make_event("a", 60), make_event("b", 120)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, ScriptedJob())

    assert scheduler.schedule_all_pending(CONFIG) == 2
    assert scheduler.schedule_all_pending(CONFIG) == 0

    assert scheduler.tracked_event_ids() == {"a", "b"}
    assert len(timers.get_jobs()) == 2
    assert len(store.get_jobs_by_status()) == 2
    assert _next_run(timers, scheduler, "a") == clock.now + timedelta(minutes=55)


def test_at_most_one_timer_per_event(store, timers, clock, make_event):
    store.insert_events([make_event("a", 60)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, ScriptedJob())

    scheduler.schedule_all_pending(CONFIG)
    scheduler.recover_jobs()
    scheduler.schedule_all_pending(CONFIG)

    assert scheduler.tracked_count() == 1
    assert len(timers.get_jobs()) == 1


def test_past_due_event_is_caught_up(store, timers, clock, make_event):
    # Starts in 2 minutes, so the 5 minute lead time has already passed
    store.insert_events([make_event("soon", 2)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, ScriptedJob())

    scheduler.schedule_all_pending(CONFIG)

    assert _next_run(timers, scheduler, "soon") == clock.now
    # The stored scheduled time is not rewritten by the catch-up
    assert store.get_job("soon").scheduled_time == clock.now - timedelta(minutes=3)


def test_event_past_grace_window_fails(store, timers, clock, make_event):
    store.insert_events([make_event("missed", -61)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, ScriptedJob())

    assert scheduler.schedule_all_pending(CONFIG) == 0

    assert scheduler.tracked_count() == 0
    assert store.get_event("missed").status == EventStatus.FAILED
    job = store.get_job("missed")
    assert job.status == JobStatus.FAILED
    assert "Missed processing window" in job.error_message


def test_recovery_preserves_scheduled_time(store, timers, clock, make_event):
    store.insert_events([make_event("a", 60), make_event("b", 30), make_event("c", 90)], now=clock.now)
    first = _make_scheduler(store, timers, clock, ScriptedJob())
    first.schedule_all_pending(CONFIG)
    store.mark_job_processing("b", now=clock.now)
    store.complete_job("c", now=clock.now)

    # Simulate a restart: fresh scheduler, same database
    timers.remove_all_jobs()
    clock.advance(minutes=40)
    restarted = _make_scheduler(store, timers, clock, ScriptedJob())

    assert restarted.recover_jobs() == 2
    assert restarted.tracked_event_ids() == {"a", "b"}
    assert _next_run(timers, restarted, "a") == clock.now + timedelta(minutes=15)
    # Interrupted while processing and already past due: fires right away
    assert _next_run(timers, restarted, "b") == clock.now

    assert store.get_job("a").scheduled_time == clock.now + timedelta(minutes=15)
    assert store.get_job("b").status == JobStatus.PROCESSING


def test_end_to_end_success(store, timers, clock, make_event):
    job = ScriptedJob()
    store.insert_events([make_event("e2e", 10)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, job)

    scheduler.schedule_all_pending(CONFIG)
    assert _next_run(timers, scheduler, "e2e") == clock.now + timedelta(minutes=5)

    clock.advance(minutes=5)
    scheduler.fire("e2e")

    assert job.calls == ["e2e"]
    assert store.get_event("e2e").status == EventStatus.PROCESSED
    assert store.get_job("e2e").status == JobStatus.COMPLETED
    assert scheduler.tracked_count() == 0


def test_end_to_end_fail_fail_succeed(store, timers, clock, make_event):
    job = ScriptedJob(failures=2)
    store.insert_events([make_event("flaky", 10)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, job)
    scheduler.schedule_all_pending(CONFIG)

    clock.advance(minutes=5)
    scheduler.fire("flaky")
    assert store.get_job("flaky").status == JobStatus.RETRYING
    assert _next_run(timers, scheduler, "flaky") == clock.now + timedelta(minutes=5)

    clock.advance(minutes=5)
    scheduler.fire("flaky")
    assert store.get_job("flaky").retry_count == 2
    assert _next_run(timers, scheduler, "flaky") == clock.now + timedelta(minutes=10)

    clock.advance(minutes=10)
    scheduler.fire("flaky")

    assert len(job.calls) == 3
    assert store.get_event("flaky").status == EventStatus.PROCESSED
    assert store.get_job("flaky").status == JobStatus.COMPLETED
    assert scheduler.tracked_count() == 0
    assert timers.get_jobs() == []


def test_retries_exhausted(store, timers, clock, make_event):
    job = ScriptedJob(failures=10)
    store.insert_events([make_event("doomed", 10)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, job, max_attempts=3)
    scheduler.schedule_all_pending(CONFIG)

    for _ in range(3):
        handle = scheduler.timer_for("doomed")
        clock.now = handle.run_at
        scheduler.fire("doomed")

    assert len(job.calls) == 3
    assert store.get_job("doomed").retry_count == 3
    assert store.get_event("doomed").status == EventStatus.FAILED
    assert scheduler.timer_for("doomed") is None

    # A later discovery cycle never reschedules it
    assert scheduler.schedule_all_pending(CONFIG) == 0


def test_fire_skips_finished_event(store, timers, clock, make_event):
    job = ScriptedJob()
    store.insert_events([make_event("done", 10)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, job)
    scheduler.schedule_all_pending(CONFIG)
    store.complete_job("done", now=clock.now)

    scheduler.fire("done")

    assert job.calls == []
    assert scheduler.tracked_count() == 0


def test_event_stays_tracked_while_running(store, timers, clock, make_event):
    store.insert_events([make_event("busy", 10)], now=clock.now)
    observed = {}

    def job(event):
        # Discovery running concurrently with this execution
        observed['scheduled'] = scheduler.schedule_all_pending(CONFIG)
        observed['running'] = scheduler.timer_for(event.id).running
        return {}

    scheduler = _make_scheduler(store, timers, clock, job)
    scheduler.schedule_all_pending(CONFIG)
    clock.advance(minutes=5)
    scheduler.fire("busy")

    assert observed == {'scheduled': 0, 'running': True}
    assert scheduler.tracked_count() == 0


def test_cancel_and_close(store, timers, clock, make_event):
    store.insert_events([make_event("a", 60), make_event("b", 60)], now=clock.now)
    scheduler = _make_scheduler(store, timers, clock, ScriptedJob())
    scheduler.schedule_all_pending(CONFIG)

    assert scheduler.cancel_job("a") is True
    assert scheduler.cancel_job("a") is False
    assert scheduler.cancel_all() == 1
    assert timers.get_jobs() == []

    scheduler.close()
    assert scheduler.schedule_all_pending(CONFIG) == 0
    assert scheduler.tracked_count() == 0
