"""
Tests for the circuit breaker state machine.
"""

import pytest

from autoprint.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


def _fail():
    raise RuntimeError("boom")


def _trip(breaker, times):
    for _ in range(times):
        with pytest.raises(RuntimeError):
            breaker.execute(_fail)


def test_opens_after_threshold_failures(monotonic):
    breaker = CircuitBreaker("API", threshold=5, success_threshold=2, timeout=60, clock=monotonic)

    _trip(breaker, 4)
    assert breaker.state == CircuitState.CLOSED

    _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN


def test_open_circuit_rejects_without_calling(monotonic):
    breaker = CircuitBreaker("API", threshold=5, timeout=60, clock=monotonic)
    _trip(breaker, 5)

    calls = []
    with pytest.raises(CircuitOpenError) as exc_info:
        breaker.execute(lambda: calls.append(1))

    assert calls == []
    assert exc_info.value.retry_in == pytest.approx(60)
    assert "Retry in 60s" in str(exc_info.value)


def test_half_open_closes_after_success_threshold(monotonic):
    breaker = CircuitBreaker("API", threshold=5, success_threshold=2, timeout=60, clock=monotonic)
    _trip(breaker, 5)

    monotonic.advance(59)
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: "ok")

    monotonic.advance(1)
    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.HALF_OPEN

    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0
    assert breaker.success_count == 0


def test_half_open_failure_reopens_with_fresh_cooldown(monotonic):
    breaker = CircuitBreaker("API", threshold=5, success_threshold=2, timeout=60, clock=monotonic)
    _trip(breaker, 5)

    monotonic.advance(60)
    _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN

    monotonic.advance(30)
    with pytest.raises(CircuitOpenError) as exc_info:
        breaker.execute(lambda: "ok")
    assert exc_info.value.retry_in == pytest.approx(30)


def test_success_resets_failure_count(monotonic):
    breaker = CircuitBreaker("API", threshold=3, clock=monotonic)
    _trip(breaker, 2)
    breaker.execute(lambda: None)
    _trip(breaker, 2)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 2


def test_status_and_reset(monotonic):
    breaker = CircuitBreaker("API", threshold=1, timeout=60, clock=monotonic)
    _trip(breaker, 1)

    status = breaker.get_status()
    assert status['name'] == "API"
    assert status['state'] == "OPEN"
    assert status['failure_count'] == 1
    assert status['retry_in_seconds'] == pytest.approx(60)

    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_status()['retry_in_seconds'] is None
