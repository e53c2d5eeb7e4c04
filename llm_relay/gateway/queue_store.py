"""Durable queue store backed by SQLAlchemy.

Every method opens its own session from the factory, so the store can be
shared by the API, the dispatch ticker and Celery workers.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from llm_relay.gateway.types import QueueItemStatus
from llm_relay.models.provider_config import ProviderConfig
from llm_relay.models.queue_item import QueueItem
from llm_relay.models.usage import CallLog

logger = logging.getLogger(__name__)


def locked_config_query(config_id: int):
    """SELECT of a provider config row that holds a row lock until commit."""
    return select(ProviderConfig).where(ProviderConfig.id == config_id).with_for_update()


class AdmissionTx:
    """One admission transaction: config row locked, quota counted, items added.

    Admissions for the same config serialize on the config row lock, across
    processes as well as within one.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lock_config(self, config_id: int) -> ProviderConfig | None:
        result = await self.session.execute(locked_config_query(config_id))
        return result.scalar_one_or_none()

    async def count_calls_since(self, account_id: int, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(CallLog.id)).where(
                CallLog.account_id == account_id,
                CallLog.created_at >= since,
            )
        )
        return result.scalar_one()

    def add_items(self, items: list[QueueItem]) -> None:
        self.session.add_all(items)


class QueueStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def admission(self) -> AsyncIterator[AdmissionTx]:
        """Transaction for quota-checked admission. Commits on clean exit, rolls back otherwise."""
        async with self._session_factory() as session:
            async with session.begin():
                yield AdmissionTx(session)

    async def claim_batch(self, limit: int) -> list[QueueItem]:
        """Select up to `limit` pending items and mark them processing.

        Order is priority desc, created_at asc. Rows locked by another
        dispatcher are skipped.
        """
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueItem)
                .where(QueueItem.status == QueueItemStatus.PENDING.value)
                .order_by(QueueItem.priority.desc(), QueueItem.created_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            items = list(result.scalars().all())
            for item in items:
                item.status = QueueItemStatus.PROCESSING.value
                item.started_at = now
                item.retry_count = item.retry_count + 1
            await session.commit()
        if items:
            logger.debug("Claimed %d pending item(s)", len(items))
        return items

    async def write_back(
        self,
        item_id: str,
        values: dict,
        ledger: Callable[[AsyncSession], None] | None = None,
    ) -> None:
        """Update an item and add its ledger rows in the same transaction."""
        async with self._session_factory() as session:
            await session.execute(update(QueueItem).where(QueueItem.id == item_id).values(**values))
            if ledger is not None:
                ledger(session)
            await session.commit()

    async def cancel(self, item_id: str, account_id: int, error: str) -> bool:
        """Move a pending item owned by `account_id` to failed. Returns whether a row changed."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(QueueItem)
                .where(
                    QueueItem.id == item_id,
                    QueueItem.account_id == account_id,
                    QueueItem.status == QueueItemStatus.PENDING.value,
                )
                .values(
                    status=QueueItemStatus.FAILED.value,
                    error=error,
                    completed_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def delete_completed_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(QueueItem).where(
                    QueueItem.status == QueueItemStatus.COMPLETED.value,
                    QueueItem.completed_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, item_id: str) -> QueueItem | None:
        async with self._session_factory() as session:
            return await session.get(QueueItem, item_id)

    async def get_config(self, config_id: int) -> ProviderConfig | None:
        async with self._session_factory() as session:
            return await session.get(ProviderConfig, config_id)

    async def count_by_status(self, account_id: int | None = None) -> dict[str, int]:
        query = select(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status)
        if account_id is not None:
            query = query.where(QueueItem.account_id == account_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()
        counts = {status.value: 0 for status in QueueItemStatus}
        for status, count in rows:
            counts[status] = count
        return counts

    async def completed_timings(self, account_id: int | None = None) -> list[tuple]:
        """(created_at, started_at, completed_at) of completed items."""
        query = select(QueueItem.created_at, QueueItem.started_at, QueueItem.completed_at).where(
            QueueItem.status == QueueItemStatus.COMPLETED.value
        )
        if account_id is not None:
            query = query.where(QueueItem.account_id == account_id)
        async with self._session_factory() as session:
            return [tuple(row) for row in (await session.execute(query)).all()]

    async def list_items(
        self,
        account_id: int,
        status: QueueItemStatus,
        limit: int,
    ) -> list[QueueItem]:
        if status in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED):
            order = QueueItem.completed_at.desc()
        else:
            order = QueueItem.created_at.asc()
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueItem)
                .where(QueueItem.account_id == account_id, QueueItem.status == status.value)
                .order_by(order)
                .limit(limit)
            )
            return list(result.scalars().all())
