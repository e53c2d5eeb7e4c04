"""Wiring of relay components from settings.

Shared by the API lifespan and Celery workers; each process builds its own
instances (breaker and governor state are per process).
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from llm_relay.core.config import settings
from llm_relay.gateway.concurrency import ConcurrencyGovernor
from llm_relay.gateway.fallback import FallbackChain, default_strategies
from llm_relay.gateway.queue_manager import RequestQueueManager
from llm_relay.gateway.queue_store import QueueStore
from llm_relay.gateway.serial_controller import StrictSerialController, make_fallback_handler


def build_chain() -> FallbackChain:
    governor = ConcurrencyGovernor(
        settings.provider_max_concurrency,
        default_limit=settings.default_max_concurrency,
    )
    return FallbackChain(governor=governor)


def build_queue_manager(
    session_factory: async_sessionmaker[AsyncSession],
    chain: FallbackChain | None = None,
) -> RequestQueueManager:
    return RequestQueueManager(QueueStore(session_factory), chain or build_chain())


def build_serial_controller(chain: FallbackChain | None = None) -> StrictSerialController:
    chain = chain or build_chain()
    return StrictSerialController(make_fallback_handler(chain, default_strategies()))
