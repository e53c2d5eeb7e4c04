"""Strict Serialization Controller: push-delivered messages, one at a time.

Whatever the delivery side does, at most one handler runs at any moment:
a message arriving while another is in flight waits, polling in fixed
increments. Each handler call is bounded by a hard timeout. Outcomes:

  - success                      → ack
  - failure matching a transient
    keyword (timeout, network...) → retry(delay)
  - any other failure            → ack (dropped)

Messages already at max attempts are rejected without calling the handler.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from llm_relay.core.config import settings
from llm_relay.core.metrics import SERIAL_MESSAGES
from llm_relay.gateway.errors import RelayError
from llm_relay.gateway.types import ProviderRequest, ProviderStrategy

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 1

TRANSIENT_KEYWORDS = (
    "timeout",
    "network",
    "connection",
    "temporary",
    "rate limit",
    "quota exceeded",
    "api error",
    "service unavailable",
)


class DeliveredMessage(Protocol):
    """A message handed over by a push-based queue."""

    id: str
    body: dict[str, Any]

    def ack(self) -> None: ...

    def retry(self, delay_seconds: float) -> None: ...


@dataclass
class SerialMessage:
    """Parsed message body passed to the handler."""

    id: str
    type: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
    attempts: int = 0
    max_retries: int = 0


@dataclass
class SerialControllerConfig:
    max_concurrency: int = MAX_CONCURRENCY
    batch_size: int = 1
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    processing_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 1.0

    @classmethod
    def from_settings(cls) -> SerialControllerConfig:
        return cls(
            max_retries=settings.serial_max_retries,
            retry_delay_seconds=settings.serial_retry_delay_seconds,
            processing_timeout_seconds=settings.serial_processing_timeout_seconds,
            poll_interval_seconds=settings.serial_poll_interval_seconds,
        )


@dataclass
class SerialStats:
    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_processing_time_ms: float = 0.0
    current_concurrency: int = 0
    queue_size: int = 0


MessageHandler = Callable[[SerialMessage], Awaitable[Any]]


class StrictSerialController:
    """Processes delivered messages strictly one at a time.

    Usage:
        controller = StrictSerialController(handler)
        await controller.process_batch(messages)
        controller.get_health_status()
    """

    def __init__(self, handler: MessageHandler, config: SerialControllerConfig | None = None):
        self.handler = handler
        self.config = config or SerialControllerConfig.from_settings()
        self.stats = SerialStats()
        self._is_processing = False
        self._current_message: str | None = None
        self._started_at = 0.0

    async def process_batch(self, messages: list[DeliveredMessage]) -> None:
        """Handle a delivered batch in order, never overlapping."""
        self.stats.queue_size = len(messages)
        for message in messages:
            await self.process_message(message)
            self.stats.queue_size = max(self.stats.queue_size - 1, 0)

    async def process_message(self, message: DeliveredMessage) -> None:
        while self._is_processing:
            logger.debug("Message %s waiting for %s", message.id, self._current_message)
            await asyncio.sleep(self.config.poll_interval_seconds)

        started = time.monotonic()
        self._is_processing = True
        self._current_message = message.id
        self._started_at = started
        self.stats.current_concurrency += 1

        try:
            parsed = self._parse(message)
            if parsed.attempts >= self.config.max_retries:
                raise RelayError(
                    f"Message {parsed.id} reached max retries ({self.config.max_retries})",
                    context={"attempts": parsed.attempts},
                )
            try:
                await asyncio.wait_for(self.handler(parsed), timeout=self.config.processing_timeout_seconds)
            except TimeoutError as e:
                raise RelayError(
                    f"Processing timeout ({self.config.processing_timeout_seconds:.0f}s)"
                ) from e
        except Exception as e:
            elapsed_ms = (time.monotonic() - started) * 1000
            self._update_stats(False, elapsed_ms)
            if self.should_retry(e):
                logger.warning("Message %s failed, retrying in %.0fs: %s", message.id, self.config.retry_delay_seconds, e)
                message.retry(self.config.retry_delay_seconds)
                SERIAL_MESSAGES.labels(outcome="retried").inc()
            else:
                logger.error("Message %s failed, dropping: %s", message.id, e)
                message.ack()
                SERIAL_MESSAGES.labels(outcome="dropped").inc()
        else:
            elapsed_ms = (time.monotonic() - started) * 1000
            self._update_stats(True, elapsed_ms)
            logger.info("Message %s processed in %.0fms", message.id, elapsed_ms)
            message.ack()
            SERIAL_MESSAGES.labels(outcome="acked").inc()
        finally:
            self._is_processing = False
            self._current_message = None
            self.stats.current_concurrency = max(self.stats.current_concurrency - 1, 0)

    def _parse(self, message: DeliveredMessage) -> SerialMessage:
        body = message.body or {}
        raw_ts = body.get("timestamp")
        try:
            timestamp = datetime.fromisoformat(raw_ts) if raw_ts else datetime.now(timezone.utc)
        except (TypeError, ValueError) as e:
            raise RelayError(f"Message parse failed: {e}") from e
        return SerialMessage(
            id=body.get("id") or message.id,
            type=body.get("type", ""),
            payload=dict(body.get("payload") or {}),
            timestamp=timestamp,
            attempts=int(body.get("attempts") or 0),
            max_retries=int(body.get("max_retries") or self.config.max_retries),
        )

    @staticmethod
    def should_retry(error: BaseException) -> bool:
        text = str(error).lower()
        return any(keyword in text for keyword in TRANSIENT_KEYWORDS)

    def _update_stats(self, success: bool, elapsed_ms: float) -> None:
        s = self.stats
        s.total_processed += 1
        if success:
            s.success_count += 1
        else:
            s.failure_count += 1
        s.average_processing_time_ms += (elapsed_ms - s.average_processing_time_ms) / s.total_processed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_processing_status(self) -> dict:
        elapsed_ms = (time.monotonic() - self._started_at) * 1000 if self._is_processing else 0.0
        return {
            "is_processing": self._is_processing,
            "current_message": self._current_message,
            "processing_time_ms": elapsed_ms,
            "config": asdict(self.config),
        }

    def get_stats(self) -> dict:
        return asdict(self.stats)

    def reset_stats(self) -> None:
        self.stats = SerialStats(
            current_concurrency=self.stats.current_concurrency,
            queue_size=self.stats.queue_size,
        )

    def get_health_status(self) -> dict:
        s = self.stats
        issues: list[str] = []

        if s.current_concurrency > self.config.max_concurrency:
            issues.append(f"Concurrency over limit: {s.current_concurrency}/{self.config.max_concurrency}")

        failure_rate = (s.failure_count / s.total_processed * 100) if s.total_processed else 0.0
        if failure_rate > 20:
            issues.append(f"Failure rate too high: {failure_rate:.1f}%")

        timeout_ms = self.config.processing_timeout_seconds * 1000
        if s.average_processing_time_ms > timeout_ms * 0.8:
            issues.append(f"Processing time too long: {s.average_processing_time_ms:.0f}ms")

        return {
            "is_healthy": not issues,
            "issues": issues,
            "current_load": s.current_concurrency / self.config.max_concurrency,
        }

    async def force_stop(self) -> None:
        """Clear the in-flight marker so waiting messages may proceed."""
        if self._is_processing:
            logger.warning("Force-stopping serial processing of %s", self._current_message)
            self._is_processing = False
            self._current_message = None
            self.stats.current_concurrency = 0


def make_fallback_handler(chain, strategies: list[ProviderStrategy]) -> MessageHandler:
    """Handler that sends the message payload through the fallback chain.

    Raises the chain's final error so the controller can classify it.
    """

    async def handle(message: SerialMessage):
        request = ProviderRequest.from_dict(message.payload)
        result = await chain.execute(request, strategies)
        if not result.success:
            raise result.error or RelayError("Processing failed")
        return result.response

    return handle
