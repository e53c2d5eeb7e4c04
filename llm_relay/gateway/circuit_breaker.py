"""Circuit Breaker owned by a single retry engine.

States:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many failures (or one fatal failure), requests are rejected
    immediately until next_attempt_time
  - HALF_OPEN: recovery window elapsed, a single trial request is let through;
    success closes the circuit, failure re-opens it for another window

A non-retryable error opens the circuit at once; retryable errors open it
after FAILURE_THRESHOLD consecutive failures.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from llm_relay.core.metrics import BREAKER_OPENED
from llm_relay.gateway.errors import RelayError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Point-in-time snapshot of a breaker.

    last_failure_time and next_attempt_time are readings of the breaker clock
    (monotonic by default); to_dict exposes wall-clock and relative values instead.
    """

    is_open: bool = False
    failure_count: int = 0
    last_failure_time: float | None = None
    next_attempt_time: float | None = None
    state: CircuitState = CircuitState.CLOSED
    total_failures: int = 0
    total_successes: int = 0
    last_failure_at: datetime | None = None
    retry_after_seconds: float | None = None

    def to_dict(self) -> dict:
        next_attempt_at = None
        if self.retry_after_seconds is not None:
            next_attempt_at = (datetime.now(timezone.utc) + timedelta(seconds=self.retry_after_seconds)).isoformat()
        return {
            "state": self.state.value,
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "next_attempt_at": next_attempt_at,
            "retry_after_seconds": self.retry_after_seconds,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }


# Thresholds for opening the circuit
FAILURE_THRESHOLD = 5  # Consecutive failures to open circuit
RECOVERY_TIMEOUT = 60.0  # Seconds before trying half-open


class CircuitBreaker:
    """Breaker state machine, safe to share between concurrent dispatch workers.

    Usage:
        cb = CircuitBreaker(name="glm")

        if not cb.allow_request():
            raise CircuitOpenError(...)

        cb.record_success()          # after a good call
        cb.record_failure(error)     # after a failed call
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_timeout: float = RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitBreakerState()
        self._trial_in_flight = False
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """Check whether a call may contact the provider.

        Returns True if the circuit is closed, or if the recovery window has
        elapsed and no other trial request is already in flight.
        """
        with self._lock:
            state = self._state
            if state.state == CircuitState.CLOSED:
                return True

            now = self._clock()
            if state.state == CircuitState.OPEN:
                if state.next_attempt_time is not None and now >= state.next_attempt_time:
                    state.state = CircuitState.HALF_OPEN
                    self._trial_in_flight = True
                    logger.info("Circuit %s transitioning to HALF_OPEN", self.name)
                    return True
                return False

            # HALF_OPEN: only one trial at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        """Record a successful call: resets failure counter, closes circuit."""
        with self._lock:
            state = self._state
            if state.state != CircuitState.CLOSED:
                logger.info("Circuit %s CLOSED (recovered)", self.name)
            state.state = CircuitState.CLOSED
            state.is_open = False
            state.failure_count = 0
            state.last_failure_time = None
            state.last_failure_at = None
            state.next_attempt_time = None
            state.total_successes += 1
            self._trial_in_flight = False

    def record_failure(self, error: RelayError) -> None:
        """Record a failed call and open the circuit when warranted."""
        with self._lock:
            state = self._state
            now = self._clock()
            state.total_failures += 1
            state.last_failure_time = now
            state.last_failure_at = datetime.now(timezone.utc)
            self._trial_in_flight = False

            if not error.retryable:
                state.failure_count = max(state.failure_count + 1, self.failure_threshold)
                self._open(now, reason=f"non-retryable {error.kind.value}")
                return

            state.failure_count += 1
            if state.state == CircuitState.HALF_OPEN:
                self._open(now, reason="trial request failed")
            elif state.failure_count >= self.failure_threshold:
                self._open(now, reason=f"{state.failure_count} consecutive failures")

    def abandon_trial(self) -> None:
        """Free the half-open trial slot when a call ends without an outcome (cancellation)."""
        with self._lock:
            self._trial_in_flight = False

    def _open(self, now: float, reason: str) -> None:
        state = self._state
        was_open = state.state == CircuitState.OPEN
        state.state = CircuitState.OPEN
        state.is_open = True
        state.next_attempt_time = now + self.recovery_timeout
        if not was_open:
            BREAKER_OPENED.labels(provider=self.name).inc()
            logger.warning(
                "Circuit %s OPENED (%s), next attempt in %.0fs",
                self.name,
                reason,
                self.recovery_timeout,
            )

    def snapshot(self) -> CircuitBreakerState:
        """Return a copy of the current state."""
        with self._lock:
            s = self._state
            return CircuitBreakerState(
                is_open=s.is_open,
                failure_count=s.failure_count,
                last_failure_time=s.last_failure_time,
                next_attempt_time=s.next_attempt_time,
                state=s.state,
                total_failures=s.total_failures,
                total_successes=s.total_successes,
                last_failure_at=s.last_failure_at,
                retry_after_seconds=self._retry_after(),
            )

    @property
    def next_attempt_time(self) -> float | None:
        return self._state.next_attempt_time

    def _retry_after(self) -> float | None:
        next_attempt = self._state.next_attempt_time
        if next_attempt is None:
            return None
        return round(max(next_attempt - self._clock(), 0.0), 3)

    def retry_after(self) -> float | None:
        """Seconds until the next trial request is allowed, None while closed."""
        with self._lock:
            return self._retry_after()

    def reset(self) -> None:
        """Manually reset the circuit to CLOSED."""
        with self._lock:
            totals = (self._state.total_failures, self._state.total_successes)
            self._state = CircuitBreakerState(total_failures=totals[0], total_successes=totals[1])
            self._trial_in_flight = False
        logger.info("Circuit %s manually RESET", self.name)
