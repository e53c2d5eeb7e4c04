"""Celery tasks for the relay queue.

  - dispatch_queue: one dispatch tick (beat-driven)
  - cleanup_queue: retention sweep (hourly)
  - process_llm_message: push-delivered message through the strict
    serialization controller; a retry decision becomes task.retry(countdown=...)

process_llm_message runs on its own queue with a single consumer and holds a
Redis lock on the broker for the whole run, so two worker processes never
process serialized messages at the same time.

Breaker state lives in the worker process and survives across ticks; the
governor is rebuilt per run because its semaphores belong to one event loop.
"""

import asyncio
import logging

import redis

from llm_relay.core.config import settings
from llm_relay.gateway.concurrency import ConcurrencyGovernor
from llm_relay.gateway.fallback import FallbackChain
from llm_relay.gateway.runtime import build_chain, build_queue_manager, build_serial_controller
from llm_relay.gateway.serial_controller import StrictSerialController
from llm_relay.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

_chain: FallbackChain | None = None
_controller: StrictSerialController | None = None
_redis: redis.Redis | None = None


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time to avoid conflicts with
    the module-level SQLAlchemy engine (which may be bound to a
    different loop created by uvicorn).
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session_factory():
    """Create a fresh async engine + session factory for the worker's event loop."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    engine = create_async_engine(settings.postgres_url, echo=False, pool_pre_ping=True)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine


def _get_chain() -> FallbackChain:
    global _chain
    if _chain is None:
        _chain = build_chain()
    _chain.governor = ConcurrencyGovernor(
        settings.provider_max_concurrency,
        default_limit=settings.default_max_concurrency,
    )
    return _chain


def _get_controller() -> StrictSerialController:
    global _controller
    if _controller is None:
        _controller = build_serial_controller(_get_chain())
    else:
        _get_chain()
    return _controller


async def _dispatch_once() -> int:
    session_factory, engine = _make_session_factory()
    try:
        manager = build_queue_manager(session_factory, _get_chain())
        return await manager.process_pending()
    finally:
        await engine.dispose()


async def _cleanup_once() -> int:
    session_factory, engine = _make_session_factory()
    try:
        manager = build_queue_manager(session_factory, _get_chain())
        return await manager.cleanup_expired_items()
    finally:
        await engine.dispose()


@celery_app.task(name="dispatch_queue")
def dispatch_queue_task():
    """Beat tick: claim and process one batch of pending items."""
    processed = _run_async(_dispatch_once())
    if processed:
        logger.info("Dispatch tick processed %d item(s)", processed)
    return {"processed": processed}


@celery_app.task(name="cleanup_queue")
def cleanup_queue_task():
    """Delete completed items older than the retention window."""
    deleted = _run_async(_cleanup_once())
    return {"deleted": deleted}


def _serial_lock():
    """Broker-wide lock held while one message runs through the controller."""
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.redis_url)
    timeout = settings.serial_processing_timeout_seconds + 30
    return _redis.lock(settings.serial_lock_key, timeout=timeout, blocking_timeout=timeout)


class CeleryDelivery:
    """Adapts a Celery task invocation to the DeliveredMessage protocol."""

    def __init__(self, message_id: str, body: dict, attempts: int):
        self.id = message_id
        self.body = {**body, "attempts": attempts}
        self.acked = False
        self.retry_delay: float | None = None

    def ack(self) -> None:
        self.acked = True

    def retry(self, delay_seconds: float) -> None:
        self.retry_delay = delay_seconds


@celery_app.task(bind=True, name="process_llm_message", max_retries=None)
def process_llm_message_task(self, body: dict):
    """Run one message through the strict serialization controller."""
    delivery = CeleryDelivery(self.request.id or body.get("id", ""), body, attempts=self.request.retries)

    lock = _serial_lock()
    if not lock.acquire():
        logger.warning("Serial lock busy, requeueing message %s", delivery.id)
        raise self.retry(countdown=settings.serial_retry_delay_seconds)
    try:
        _run_async(_get_controller().process_message(delivery))
    finally:
        lock.release()

    if delivery.retry_delay is not None:
        raise self.retry(countdown=delivery.retry_delay)
    return {"id": delivery.id, "acked": delivery.acked}
