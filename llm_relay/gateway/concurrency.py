"""Concurrency Governor: permit-based limit on in-flight calls per provider key.

Each key (provider name, or provider:account) gets its own semaphore sized
from the configured limits. A Permit must be released exactly once; a second
release is ignored so a permit can never be returned twice.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from llm_relay.core.metrics import GOVERNOR_IN_FLIGHT

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5


@dataclass
class Permit:
    """Proof of one acquired slot."""

    key: str
    permit_id: int
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False


@dataclass
class _KeySlots:
    """Semaphore and counters for a single key."""

    limit: int
    semaphore: asyncio.Semaphore
    in_flight: int = 0
    peak: int = 0
    waiting: int = 0
    total_acquired: int = 0


class ConcurrencyGovernor:
    """Bounds simultaneous calls per key.

    Usage:
        governor = ConcurrencyGovernor({"glm": 1, "openai": 5})

        async with governor.slot("glm"):
            await call_provider()

        # or explicitly
        permit = await governor.acquire("glm")
        try:
            ...
        finally:
            governor.release(permit)
    """

    def __init__(self, limits: dict[str, int] | None = None, default_limit: int = DEFAULT_LIMIT):
        self._limits = dict(limits or {})
        self.default_limit = default_limit
        self._slots: dict[str, _KeySlots] = {}
        self._ids = itertools.count(1)

    def limit_for(self, key: str) -> int:
        """Configured limit for a key; `provider:account` keys fall back to the provider's limit."""
        if key in self._limits:
            return self._limits[key]
        provider = key.split(":", 1)[0]
        return self._limits.get(provider, self.default_limit)

    def _get_slots(self, key: str) -> _KeySlots:
        if key not in self._slots:
            limit = max(1, self.limit_for(key))
            self._slots[key] = _KeySlots(limit=limit, semaphore=asyncio.Semaphore(limit))
        return self._slots[key]

    async def acquire(self, key: str, timeout: float | None = None) -> Permit:
        """Wait until fewer than N calls are outstanding for `key` and take a slot.

        Raises TimeoutError if `timeout` elapses first; no slot is held then.
        """
        slots = self._get_slots(key)
        slots.waiting += 1
        try:
            if timeout is None:
                await slots.semaphore.acquire()
            else:
                await asyncio.wait_for(slots.semaphore.acquire(), timeout=timeout)
        finally:
            slots.waiting -= 1

        slots.in_flight += 1
        slots.total_acquired += 1
        slots.peak = max(slots.peak, slots.in_flight)
        GOVERNOR_IN_FLIGHT.labels(key=key).set(slots.in_flight)
        return Permit(key=key, permit_id=next(self._ids))

    def release(self, permit: Permit) -> None:
        """Return a slot. Releasing the same permit twice is a no-op."""
        if permit.released:
            logger.warning("Permit %d for %s released twice, ignored", permit.permit_id, permit.key)
            return
        permit.released = True
        slots = self._get_slots(permit.key)
        slots.in_flight -= 1
        slots.semaphore.release()
        GOVERNOR_IN_FLIGHT.labels(key=permit.key).set(slots.in_flight)

    @asynccontextmanager
    async def slot(self, key: str, timeout: float | None = None) -> AsyncIterator[Permit]:
        """Acquire a permit for the duration of the block, releasing on every exit path."""
        permit = await self.acquire(key, timeout=timeout)
        try:
            yield permit
        finally:
            self.release(permit)

    def get_stats(self, key: str) -> dict:
        slots = self._get_slots(key)
        return {
            "key": key,
            "limit": slots.limit,
            "in_flight": slots.in_flight,
            "peak": slots.peak,
            "waiting": slots.waiting,
            "total_acquired": slots.total_acquired,
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(key) for key in self._slots]
