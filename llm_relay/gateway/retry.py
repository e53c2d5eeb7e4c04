"""Retry engine: bounded retries with capped exponential backoff and a circuit breaker.

Each engine instance owns one CircuitBreaker; the fallback chain keeps one
engine per provider strategy, so breaker state is scoped to a provider and
shared by every dispatch worker that calls it.

Backoff strategy:
  delay = min(base_delay * multiplier^(attempt - 1), max_delay)

Whether a failed attempt is retried depends on the strategy's retryable
kinds AND the per-kind RETRY_POLICY table (see errors.py).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import Counter, OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from llm_relay.core.metrics import PROVIDER_ATTEMPTS, PROVIDER_LATENCY
from llm_relay.gateway.circuit_breaker import (
    FAILURE_THRESHOLD,
    RECOVERY_TIMEOUT,
    CircuitBreaker,
    CircuitBreakerState,
)
from llm_relay.gateway.errors import CircuitOpenError, RelayError, normalize_error, policy_for
from llm_relay.gateway.types import (
    AttemptRecord,
    ProviderResponse,
    RetryResult,
    RetryStrategy,
)

logger = logging.getLogger(__name__)

_HISTORY_LIMIT = 1000  # engine calls kept for statistics


class RetryEngine:
    """Wraps a single provider call with retries and a circuit breaker.

    Usage:
        engine = RetryEngine(name="glm")
        result = await engine.execute_with_retry(lambda: adapter.send(request))
        if result.success:
            ...
    """

    def __init__(
        self,
        name: str = "default",
        strategy: RetryStrategy | None = None,
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_timeout: float = RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.strategy = strategy or RetryStrategy()
        self.breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            clock=clock,
        )
        self._sleep = sleep
        self._history: OrderedDict[str, list[AttemptRecord]] = OrderedDict()

    async def execute_with_retry(
        self,
        call: Callable[[], Awaitable[ProviderResponse]],
        max_attempts: int | None = None,
    ) -> RetryResult:
        """Run `call` up to max_attempts times and report every attempt."""
        max_attempts = max_attempts or self.strategy.max_attempts
        started = time.perf_counter()
        history: list[AttemptRecord] = []
        self._remember(history)
        last_error: RelayError | None = None

        for attempt in range(1, max_attempts + 1):
            if not self.breaker.allow_request():
                error = CircuitOpenError(
                    provider=self.name,
                    retry_after_seconds=self.breaker.retry_after(),
                    last_error=str(last_error) if last_error else None,
                )
                PROVIDER_ATTEMPTS.labels(provider=self.name, outcome=error.kind.value).inc()
                return self._result(False, started, history, attempts=attempt - 1, error=error)

            record = AttemptRecord(attempt=attempt)
            history.append(record)

            try:
                response = await call()
            except asyncio.CancelledError:
                self.breaker.abandon_trial()
                raise
            except Exception as exc:
                error = normalize_error(exc)
                last_error = error
                record.error = error
                self.breaker.record_failure(error)
                PROVIDER_ATTEMPTS.labels(provider=self.name, outcome=error.kind.value).inc()

                if not self.should_retry(error, attempt, max_attempts):
                    logger.warning(
                        "%s call failed after %d attempt(s): %s",
                        self.name,
                        attempt,
                        error,
                    )
                    return self._result(False, started, history, attempts=attempt, error=error)

                delay_ms = self.calculate_delay(attempt)
                record.delay_ms = delay_ms
                logger.info(
                    "Retry %d/%d for %s in %dms (%s)",
                    attempt,
                    max_attempts - 1,
                    self.name,
                    delay_ms,
                    error.kind.value,
                )
                await self._sleep(delay_ms / 1000)
                continue

            record.success = True
            self.breaker.record_success()
            PROVIDER_ATTEMPTS.labels(provider=self.name, outcome="success").inc()
            if not response.provider:
                response.provider = self.name
            return self._result(True, started, history, attempts=attempt, response=response)

        # Only reachable with max_attempts < 1
        error = RelayError("Maximum retry attempts exceeded", context={"max_attempts": max_attempts})
        return self._result(False, started, history, attempts=len(history), error=error)

    def should_retry(self, error: RelayError, attempt: int, max_attempts: int) -> bool:
        """Decide whether the failed `attempt` (1-based) gets another try."""
        if attempt >= max_attempts:
            return False
        if error.kind not in self.strategy.retryable_errors:
            return False
        return policy_for(error.kind).allows(attempt)

    def calculate_delay(self, attempt: int) -> int:
        """Backoff in milliseconds before the try following `attempt` (1-based)."""
        s = self.strategy
        delay = s.base_delay_ms * (s.backoff_multiplier ** (attempt - 1))
        return int(min(delay, s.max_delay_ms))

    def _result(
        self,
        success: bool,
        started: float,
        history: list[AttemptRecord],
        attempts: int,
        response: ProviderResponse | None = None,
        error: RelayError | None = None,
    ) -> RetryResult:
        elapsed = time.perf_counter() - started
        PROVIDER_LATENCY.labels(provider=self.name).observe(elapsed)
        return RetryResult(
            success=success,
            response=response,
            error=error,
            attempts=attempts,
            total_time_ms=int(elapsed * 1000),
            history=history,
            provider=self.name,
        )

    # ------------------------------------------------------------------
    # Breaker & strategy management
    # ------------------------------------------------------------------

    def get_circuit_breaker_state(self) -> CircuitBreakerState:
        return self.breaker.snapshot()

    def reset_circuit_breaker(self) -> None:
        self.breaker.reset()

    def update_strategy(self, **changes) -> RetryStrategy:
        self.strategy = replace(self.strategy, **changes)
        return self.strategy

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _remember(self, history: list[AttemptRecord]) -> None:
        self._history[uuid.uuid4().hex] = history
        while len(self._history) > _HISTORY_LIMIT:
            self._history.popitem(last=False)

    def get_retry_statistics(self) -> dict:
        """Aggregate attempt histories of recent calls."""
        calls = [h for h in self._history.values() if h]
        attempts = [a for h in calls for a in h]
        errors = Counter(a.error.kind.value for a in attempts if a.error)
        total_calls = len(calls)
        return {
            "total_calls": total_calls,
            "total_retries": sum(1 for a in attempts if not a.success),
            "success_rate": (sum(1 for a in attempts if a.success) / total_calls) if total_calls else 0.0,
            "average_attempts": (len(attempts) / total_calls) if total_calls else 0.0,
            "error_distribution": dict(errors),
        }

    def clear_history(self, older_than: timedelta = timedelta(hours=1)) -> int:
        """Drop histories whose first attempt is older than `older_than`. Returns count dropped."""
        cutoff = datetime.now(timezone.utc) - older_than
        stale = [key for key, h in self._history.items() if not h or h[0].timestamp < cutoff]
        for key in stale:
            del self._history[key]
        return len(stale)
