"""
Circuit breaker guarding calls to the remote event API.

Tracks consecutive failures and temporarily stops calling the dependency
when it appears to be down:

- CLOSED: normal operation, calls pass through
- OPEN: threshold exceeded, calls fail fast without reaching the dependency
- HALF_OPEN: cooldown elapsed, calls are let through to test recovery
"""

import logging
import math
import threading
import time
from enum import Enum
from typing import Callable, Any, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised when a call is refused because the circuit is open."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(
            f"{name} circuit breaker is OPEN. Service temporarily unavailable. "
            f"Retry in {math.ceil(retry_in)}s."
        )


class CircuitBreaker:
    """
    Three-state circuit breaker.

    State is checked and updated under a lock; the wrapped call itself runs
    outside the lock so concurrent jobs are not serialized on network I/O.
    """

    def __init__(
        self,
        name: str = "CircuitBreaker",
        threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the breaker.

        Args:
            name: Name used in log messages and errors
            threshold: Consecutive failures before opening
            success_threshold: Consecutive HALF_OPEN successes before closing
            timeout: Cooldown in seconds before probing an open circuit
            clock: Monotonic time source in seconds
        """
        self.name = name
        self.threshold = threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.next_attempt_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def execute(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute a function through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is open and the cooldown has not elapsed
            Exception: Whatever the wrapped function raises
        """
        self._before_call()

        try:
            result = fn(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _before_call(self):
        with self._lock:
            if self._state != CircuitState.OPEN:
                return

            now = self._clock()
            if now < self.next_attempt_time:
                raise CircuitOpenError(self.name, self.next_attempt_time - now)

            self._state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info(f"{self.name} circuit breaker entering HALF_OPEN state (testing recovery)")

    def _on_success(self):
        with self._lock:
            self.failure_count = 0

            if self._state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._state = CircuitState.CLOSED
                    self.success_count = 0
                    self.next_attempt_time = None
                    logger.info(f"{self.name} circuit breaker CLOSED (service recovered)")

    def _on_failure(self):
        with self._lock:
            now = self._clock()
            self.failure_count += 1
            self.last_failure_time = now

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self.success_count = 0
                self.next_attempt_time = now + self.timeout
                logger.warning(
                    f"{self.name} circuit breaker reopened (recovery failed, retry in {self.timeout:.0f}s)"
                )
            elif self._state == CircuitState.CLOSED and self.failure_count >= self.threshold:
                self._state = CircuitState.OPEN
                self.next_attempt_time = now + self.timeout
                logger.error(
                    f"{self.name} circuit breaker OPEN "
                    f"({self.failure_count} failures, retry in {self.timeout:.0f}s)"
                )

    def get_status(self) -> Dict[str, Any]:
        """Get current breaker state for health reporting."""
        with self._lock:
            retry_in = None
            if self._state == CircuitState.OPEN:
                retry_in = max(0.0, self.next_attempt_time - self._clock())
            return {
                'name': self.name,
                'state': self._state.value,
                'failure_count': self.failure_count,
                'success_count': self.success_count,
                'last_failure_time': self.last_failure_time,
                'retry_in_seconds': retry_in,
            }

    def reset(self):
        """Manually reset the breaker to CLOSED."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.next_attempt_time = None
        logger.info(f"{self.name} circuit breaker manually reset to CLOSED")
