"""Request Queue Manager: quota-gated admission and the dispatch loop.

Admission:
  - enqueue / enqueue_batch check the account's daily and monthly quota
    (call-log rows in the current UTC day/month) and persist pending items;
    a batch is admitted whole or not at all
  - admission errors are raised to the caller and create no item

Dispatch (one tick):
  - claim up to batch_size pending items (priority desc, oldest first)
  - run them concurrently through the fallback chain, under the governor
  - write back: completed, requeued (retryable and within budget) or failed

Maintenance:
  - cleanup_expired_items deletes completed items past the retention window

Usage:
    manager = RequestQueueManager(QueueStore(async_session_factory), FallbackChain(governor))
    queue_id = await manager.enqueue(account_id=1, config_id=7, request=ProviderRequest(...))

    await manager.start()   # ticker
    ...
    await manager.stop()    # waits for the in-flight tick
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from llm_relay.core.config import settings
from llm_relay.core.metrics import QUEUE_ITEMS
from llm_relay.gateway.errors import (
    ConfigInactiveError,
    ConfigNotFoundError,
    ErrorKind,
    QuotaExceededError,
    RelayError,
)
from llm_relay.gateway.fallback import FallbackChain, build_strategies
from llm_relay.gateway.queue_store import AdmissionTx, QueueStore
from llm_relay.gateway.types import (
    ProviderRequest,
    ProviderStrategy,
    QueueItemStatus,
    QueueRequest,
    RetryResult,
    new_queue_id,
)
from llm_relay.gateway.usage import UsageLedger
from llm_relay.models.provider_config import ProviderConfig
from llm_relay.models.queue_item import QueueItem

logger = logging.getLogger(__name__)

_RECENT_PENDING = 10
_RECENT_PROCESSING = 10
_RECENT_TERMINAL = 5


class RequestQueueManager:
    """Quota-gated durable queue drained by a periodic dispatch tick.

    Each tick claims up to batch_size pending items and sends them through
    the fallback chain concurrently. Each strategy gets up to
    max_retries + 1 attempts per tick. Retryable failures go back to pending
    until the item's retry budget is spent.

    Usage:
        manager = RequestQueueManager(QueueStore(async_session_factory), FallbackChain(governor))
        await manager.start()

        # Admission (raises QuotaExceededError when the batch does not fit):
        queue_id = await manager.enqueue(account_id, config_id, request)

        # Polling:
        status = await manager.get_user_queue_status(account_id)

        await manager.stop()
    """

    def __init__(
        self,
        store: QueueStore,
        chain: FallbackChain,
        ledger: UsageLedger | None = None,
        batch_size: int | None = None,
        dispatch_interval: float | None = None,
        cleanup_interval: float | None = None,
        retention: timedelta | None = None,
        strategies_for: Callable[[ProviderConfig], list[ProviderStrategy]] = build_strategies,
    ):
        self.store = store
        self.chain = chain
        self.ledger = ledger or UsageLedger()
        self.batch_size = batch_size or settings.queue_batch_size
        self.dispatch_interval = dispatch_interval or settings.queue_dispatch_interval_seconds
        self.cleanup_interval = cleanup_interval or settings.queue_cleanup_interval_seconds
        self.retention = retention or timedelta(days=settings.queue_retention_days)
        self._strategies_for = strategies_for

        self._account_locks: dict[int, asyncio.Lock] = {}
        self._stop = asyncio.Event()
        self._ticker: asyncio.Task | None = None
        self._last_cleanup = 0.0

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        if account_id not in self._account_locks:
            self._account_locks[account_id] = asyncio.Lock()
        return self._account_locks[account_id]

    async def enqueue(
        self,
        account_id: int,
        config_id: int,
        request: ProviderRequest,
        content_id: str = "",
        priority: int = 0,
    ) -> str:
        """Admit one request. Returns the new queue id."""
        ids = await self.enqueue_batch(
            account_id,
            config_id,
            [QueueRequest(request=request, content_id=content_id, priority=priority)],
        )
        return ids[0]

    async def enqueue_batch(self, account_id: int, config_id: int, requests: list[QueueRequest]) -> list[str]:
        """Admit a batch with a single quota check. All items are persisted or none are."""
        if not requests:
            return []

        async with self._lock_for(account_id), self.store.admission() as tx:
            config = await self._get_active_config(tx, account_id, config_id)
            await self._check_quota(tx, account_id, config, len(requests))

            now = datetime.now(timezone.utc)
            items = [
                QueueItem(
                    id=new_queue_id(),
                    account_id=account_id,
                    provider_config_id=config_id,
                    content_id=entry.content_id,
                    request_payload=entry.request.to_json(),
                    priority=entry.priority,
                    status=QueueItemStatus.PENDING.value,
                    retry_count=0,
                    max_retries=max(config.max_retries or settings.queue_default_max_retries, 1),
                    created_at=now,
                )
                for entry in requests
            ]
            tx.add_items(items)

        QUEUE_ITEMS.labels(event="enqueued").inc(len(items))
        logger.info(
            "Queued %d request(s) for account %d",
            len(items),
            account_id,
            extra={"account_id": account_id},
        )
        return [item.id for item in items]

    async def _get_active_config(self, tx: AdmissionTx, account_id: int, config_id: int) -> ProviderConfig:
        config = await tx.lock_config(config_id)
        if config is None or config.account_id != account_id:
            QUEUE_ITEMS.labels(event="rejected").inc()
            raise ConfigNotFoundError(config_id)
        if not config.is_active:
            QUEUE_ITEMS.labels(event="rejected").inc()
            raise ConfigInactiveError(config_id)
        return config

    async def _check_quota(self, tx: AdmissionTx, account_id: int, config: ProviderConfig, requested: int) -> None:
        now = datetime.now(timezone.utc)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)

        for window, limit, since in (
            ("daily", config.daily_limit, day_start),
            ("monthly", config.monthly_limit, month_start),
        ):
            if limit is None:
                continue
            usage = await tx.count_calls_since(account_id, since)
            if usage + requested > limit:
                QUEUE_ITEMS.labels(event="rejected").inc(requested)
                logger.info(
                    "Quota refused for account %d: %s %d+%d > %d",
                    account_id,
                    window,
                    usage,
                    requested,
                    limit,
                    extra={"account_id": account_id},
                )
                raise QuotaExceededError(
                    window=window,
                    limit=limit,
                    current_usage=usage,
                    requested=requested,
                    account_id=account_id,
                )

    async def cancel_request(self, queue_id: str, account_id: int) -> bool:
        """Cancel a still-pending item owned by the account."""
        error = RelayError("Request cancelled by user", kind=ErrorKind.CANCELLED, context={"queue_id": queue_id})
        cancelled = await self.store.cancel(queue_id, account_id, json.dumps(error.to_dict()))
        if cancelled:
            QUEUE_ITEMS.labels(event="cancelled").inc()
            logger.info("Cancelled %s", queue_id, extra={"queue_id": queue_id, "account_id": account_id})
        return cancelled

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def process_pending(self) -> int:
        """Run one dispatch tick. Returns the number of items handled."""
        items = await self.store.claim_batch(self.batch_size)
        if not items:
            return 0

        logger.info("Dispatching %d queued request(s)", len(items))
        await asyncio.gather(*(self._process_item(item) for item in items))
        return len(items)

    async def _process_item(self, item: QueueItem) -> None:
        started = time.perf_counter()
        try:
            result = await self._dispatch(item)
        except RelayError as e:
            result = RetryResult(success=False, error=e)
        except Exception as e:
            logger.exception("Unexpected error processing %s", item.id, extra={"queue_id": item.id})
            result = RetryResult(
                success=False,
                error=RelayError(str(e) or type(e).__name__, kind=ErrorKind.PROCESSING_ERROR),
            )
        processing_ms = int((time.perf_counter() - started) * 1000)
        await self._write_back(item, result, processing_ms)

    async def _dispatch(self, item: QueueItem) -> RetryResult:
        config = await self.store.get_config(item.provider_config_id)
        if config is None:
            raise ConfigNotFoundError(item.provider_config_id)

        request = ProviderRequest.from_json(item.request_payload)
        request.max_tokens = config.max_tokens
        request.temperature = config.temperature
        # One provider call plus the item's retry budget per strategy
        return await self.chain.execute(request, self._strategies_for(config), max_attempts=item.max_retries + 1)

    async def _write_back(self, item: QueueItem, result: RetryResult, processing_ms: int) -> None:
        now = datetime.now(timezone.utc)
        log_extra = {"queue_id": item.id, "account_id": item.account_id, "provider": result.provider}

        if result.success and result.response is not None:
            response = result.response
            values = {
                "status": QueueItemStatus.COMPLETED.value,
                "completed_at": now,
                "response": json.dumps(response.to_dict(), ensure_ascii=False),
                "error": None,
            }
            await self.store.write_back(
                item.id,
                values,
                ledger=lambda s: self.ledger.record_success(s, item, response, processing_ms, result.retries),
            )
            QUEUE_ITEMS.labels(event="completed").inc()
            logger.info("Completed %s via %s in %dms", item.id, response.provider, processing_ms, extra=log_extra)
            return

        error = result.error or RelayError("Processing failed", kind=ErrorKind.PROCESSING_ERROR)
        if error.retryable and item.retry_count < item.max_retries:
            values = {
                "status": QueueItemStatus.PENDING.value,
                "started_at": None,
                "completed_at": None,
                "error": None,
            }
            event = "requeued"
        else:
            values = {
                "status": QueueItemStatus.FAILED.value,
                "completed_at": now,
                "error": json.dumps(error.to_dict(), ensure_ascii=False),
            }
            event = "failed"

        await self.store.write_back(
            item.id,
            values,
            ledger=lambda s: self.ledger.record_failure(
                s, item, error, processing_ms, provider=result.provider or None, retry_count=result.retries
            ),
        )
        QUEUE_ITEMS.labels(event=event).inc()
        logger.warning(
            "%s %s (try %d/%d): %s",
            event.capitalize(),
            item.id,
            item.retry_count,
            item.max_retries,
            error,
            extra=log_extra,
        )

    async def cleanup_expired_items(self) -> int:
        """Delete completed items older than the retention window."""
        cutoff = datetime.now(timezone.utc) - self.retention
        deleted = await self.store.delete_completed_before(cutoff)
        if deleted:
            logger.info("Cleaned up %d expired queue item(s)", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Ticker
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._last_cleanup = time.monotonic()
        self._ticker = asyncio.create_task(self._run(), name="queue-dispatch-ticker")
        logger.info("Queue dispatcher started (every %.1fs, batch %d)", self.dispatch_interval, self.batch_size)

    async def stop(self) -> None:
        """Signal the ticker and wait for the in-flight tick to finish."""
        if self._ticker is None:
            return
        self._stop.set()
        await self._ticker
        self._ticker = None
        logger.info("Queue dispatcher stopped")

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.process_pending()
                if time.monotonic() - self._last_cleanup >= self.cleanup_interval:
                    self._last_cleanup = time.monotonic()
                    await self.cleanup_expired_items()
            except Exception:
                logger.exception("Dispatch tick failed")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.dispatch_interval)
            except TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_queue_status(self, account_id: int | None = None) -> dict:
        counts = await self.store.count_by_status(account_id)
        total = sum(counts.values())
        completed = counts[QueueItemStatus.COMPLETED.value]

        waits: list[float] = []
        runs: list[float] = []
        for created_at, started_at, completed_at in await self.store.completed_timings(account_id):
            if created_at and started_at:
                waits.append((started_at - created_at).total_seconds() * 1000)
            if started_at and completed_at:
                runs.append((completed_at - started_at).total_seconds() * 1000)

        return {
            "pending": counts[QueueItemStatus.PENDING.value],
            "processing": counts[QueueItemStatus.PROCESSING.value],
            "completed": completed,
            "failed": counts[QueueItemStatus.FAILED.value],
            "total": total,
            "success_rate": completed / total if total else 0.0,
            "avg_wait_time_ms": sum(waits) / len(waits) if waits else 0.0,
            "avg_processing_time_ms": sum(runs) / len(runs) if runs else 0.0,
        }

    async def get_user_queue_status(self, account_id: int) -> dict:
        pending = await self.store.list_items(account_id, QueueItemStatus.PENDING, _RECENT_PENDING)
        processing = await self.store.list_items(account_id, QueueItemStatus.PROCESSING, _RECENT_PROCESSING)
        completed = await self.store.list_items(account_id, QueueItemStatus.COMPLETED, _RECENT_TERMINAL)
        failed = await self.store.list_items(account_id, QueueItemStatus.FAILED, _RECENT_TERMINAL)
        return {
            "pending": [i.to_dict() for i in pending],
            "processing": [i.to_dict() for i in processing],
            "recent_completed": [i.to_dict() for i in completed],
            "recent_failed": [i.to_dict() for i in failed],
        }
