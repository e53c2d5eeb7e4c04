"""Tests for queue admission, the dispatch tick, write-back and maintenance."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from llm_relay.gateway.errors import (
    ConfigInactiveError,
    ConfigNotFoundError,
    ErrorKind,
    ProviderError,
    QuotaExceededError,
)
from llm_relay.gateway.fallback import FallbackChain
from llm_relay.gateway.queue_manager import RequestQueueManager
from llm_relay.gateway.queue_store import AdmissionTx, QueueStore, locked_config_query
from llm_relay.gateway.types import ProviderRequest, QueueRequest, RetryStrategy
from llm_relay.models import CallLog, ProviderConfig, QueueItem, UsageRecord


def _request(text: str = "hello") -> ProviderRequest:
    return ProviderRequest(messages=[{"role": "user", "content": text}])


async def _add_call_logs(session_factory, account_id: int, count: int, created_at: datetime | None = None):
    async with session_factory() as session:
        for _ in range(count):
            log = CallLog(account_id=account_id, provider_config_id=1, status="success")
            if created_at is not None:
                log.created_at = created_at
            session.add(log)
        await session.commit()


async def _count(session_factory, model, *where) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*where))
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_item(self, queue_manager, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request(), content_id="post-1", priority=3)

        item = await queue_manager.store.get(queue_id)
        assert queue_id.startswith("queue_")
        assert item.status == "pending"
        assert item.account_id == 1
        assert item.provider_config_id == provider_config.id
        assert item.content_id == "post-1"
        assert item.priority == 3
        assert item.retry_count == 0
        assert item.max_retries == 3
        assert ProviderRequest.from_json(item.request_payload).messages == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_unknown_config(self, queue_manager, provider_config):
        with pytest.raises(ConfigNotFoundError):
            await queue_manager.enqueue(1, 9999, _request())

    @pytest.mark.asyncio
    async def test_config_of_another_account(self, queue_manager, provider_config):
        with pytest.raises(ConfigNotFoundError):
            await queue_manager.enqueue(2, provider_config.id, _request())

    @pytest.mark.asyncio
    async def test_inactive_config(self, queue_manager, session_factory, db, provider_config):
        provider_config.is_active = False
        await db.commit()

        with pytest.raises(ConfigInactiveError):
            await queue_manager.enqueue(1, provider_config.id, _request())
        assert await _count(session_factory, QueueItem) == 0

    @pytest.mark.asyncio
    async def test_max_retries_clamped_to_one(self, queue_manager, db, provider_config):
        provider_config.max_retries = 0
        await db.commit()

        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())
        item = await queue_manager.store.get(queue_id)
        assert item.max_retries >= 1


class TestQuota:
    @pytest.mark.asyncio
    async def test_last_slot_is_admitted(self, queue_manager, session_factory, provider_config):
        await _add_call_logs(session_factory, 1, 99)
        assert await queue_manager.enqueue(1, provider_config.id, _request())

    @pytest.mark.asyncio
    async def test_daily_limit_reached(self, queue_manager, session_factory, provider_config):
        await _add_call_logs(session_factory, 1, 100)

        with pytest.raises(QuotaExceededError) as exc_info:
            await queue_manager.enqueue(1, provider_config.id, _request())

        assert str(exc_info.value) == "Daily limit exceeded (100/100)"
        assert exc_info.value.kind == ErrorKind.QUOTA_EXCEEDED
        assert await _count(session_factory, QueueItem) == 0

    @pytest.mark.asyncio
    async def test_other_accounts_do_not_count(self, queue_manager, session_factory, provider_config):
        await _add_call_logs(session_factory, 2, 150)
        assert await queue_manager.enqueue(1, provider_config.id, _request())

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, queue_manager, session_factory, provider_config):
        await _add_call_logs(session_factory, 1, 98)
        batch = [QueueRequest(request=_request(str(i))) for i in range(3)]

        with pytest.raises(QuotaExceededError):
            await queue_manager.enqueue_batch(1, provider_config.id, batch)
        assert await _count(session_factory, QueueItem) == 0

        ids = await queue_manager.enqueue_batch(1, provider_config.id, batch[:2])
        assert len(ids) == 2
        assert len(set(ids)) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, queue_manager, provider_config):
        assert await queue_manager.enqueue_batch(1, provider_config.id, []) == []

    @pytest.mark.asyncio
    async def test_monthly_limit(self, queue_manager, session_factory, db, provider_config):
        provider_config.daily_limit = None
        provider_config.monthly_limit = 5
        await db.commit()
        await _add_call_logs(session_factory, 1, 5)

        with pytest.raises(QuotaExceededError) as exc_info:
            await queue_manager.enqueue(1, provider_config.id, _request())
        assert str(exc_info.value) == "Monthly limit exceeded (5/5)"

    @pytest.mark.asyncio
    async def test_previous_month_not_counted(self, queue_manager, session_factory, db, provider_config):
        provider_config.daily_limit = None
        provider_config.monthly_limit = 1
        await db.commit()
        month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        await _add_call_logs(session_factory, 1, 3, created_at=month_start - timedelta(days=1))

        assert await queue_manager.enqueue(1, provider_config.id, _request())

    @pytest.mark.asyncio
    async def test_unlimited_config(self, queue_manager, session_factory, db, provider_config):
        provider_config.daily_limit = None
        provider_config.monthly_limit = None
        await db.commit()
        await _add_call_logs(session_factory, 1, 500)

        assert await queue_manager.enqueue(1, provider_config.id, _request())

    def test_config_row_locked_for_admission(self):
        sql = str(locked_config_query(1).compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE" in sql
        assert "provider_configs" in sql

    @pytest.mark.asyncio
    async def test_quota_and_insert_share_one_transaction(self, queue_manager, session_factory, provider_config):
        sessions = []
        lock_config, count_calls_since = AdmissionTx.lock_config, AdmissionTx.count_calls_since

        async def spy_lock(tx, config_id):
            sessions.append(tx.session)
            return await lock_config(tx, config_id)

        async def spy_count(tx, account_id, since):
            sessions.append(tx.session)
            assert tx.session.in_transaction()
            return await count_calls_since(tx, account_id, since)

        with (
            patch.object(AdmissionTx, "lock_config", spy_lock),
            patch.object(AdmissionTx, "count_calls_since", spy_count),
        ):
            await queue_manager.enqueue(1, provider_config.id, _request())

        # config lock, daily count, monthly count
        assert len(sessions) == 3
        assert all(s is sessions[0] for s in sessions)
        assert await _count(session_factory, QueueItem) == 1

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back(self, queue_manager, session_factory, provider_config):
        with patch.object(AdmissionTx, "add_items", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                await queue_manager.enqueue(1, provider_config.id, _request())
        assert await _count(session_factory, QueueItem) == 0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_success_writes_response_and_ledger(self, queue_manager, session_factory, strategy, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request(), content_id="c-1")

        handled = await queue_manager.process_pending()

        assert handled == 1
        item = await queue_manager.store.get(queue_id)
        assert item.status == "completed"
        assert item.retry_count == 1
        assert item.completed_at is not None
        assert item.error is None
        assert json.loads(item.response)["content"] == "Hello world"

        assert await _count(session_factory, CallLog, CallLog.status == "success") == 1
        async with session_factory() as session:
            usage = (await session.execute(select(UsageRecord))).scalar_one()
        assert usage.total_tokens == 30
        assert usage.provider == "glm"

    @pytest.mark.asyncio
    async def test_config_params_applied_to_request(self, queue_manager, db, strategy, provider_config):
        provider_config.max_tokens = 128
        provider_config.temperature = 0.1
        await db.commit()
        await queue_manager.enqueue(1, provider_config.id, _request())

        await queue_manager.process_pending()

        sent = strategy.call.await_args.args[0]
        assert sent.max_tokens == 128
        assert sent.temperature == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_nothing_pending(self, queue_manager):
        assert await queue_manager.process_pending() == 0

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, session_factory, fast_chain, strategy_factory, provider_config):
        seen: list[str] = []

        async def call(request):
            seen.append(request.messages[0]["content"])
            return (await strategy_factory().call(request))

        manager = RequestQueueManager(
            QueueStore(session_factory),
            fast_chain,
            batch_size=1,
            strategies_for=lambda config: [strategy_factory(call=call)],
        )
        await manager.enqueue(1, provider_config.id, _request("low-1"), priority=0)
        await manager.enqueue(1, provider_config.id, _request("high"), priority=5)
        await manager.enqueue(1, provider_config.id, _request("low-2"), priority=0)

        for _ in range(3):
            await manager.process_pending()

        assert seen == ["high", "low-1", "low-2"]

    @pytest.mark.asyncio
    async def test_batch_size_limits_claim(self, session_factory, fast_chain, strategy, provider_config):
        manager = RequestQueueManager(
            QueueStore(session_factory), fast_chain, batch_size=2, strategies_for=lambda config: [strategy]
        )
        for i in range(5):
            await manager.enqueue(1, provider_config.id, _request(str(i)))

        assert await manager.process_pending() == 2
        status = await manager.get_queue_status()
        assert status["pending"] == 3
        assert status["completed"] == 2

    @pytest.mark.asyncio
    async def test_retryable_failure_requeued_until_budget(self, session_factory, strategy_factory, provider_config):
        call = AsyncMock(side_effect=ProviderError("Server error", kind=ErrorKind.SERVER_ERROR))
        chain = FallbackChain(failure_threshold=100, sleep=AsyncMock())
        manager = RequestQueueManager(
            QueueStore(session_factory), chain, strategies_for=lambda config: [strategy_factory(call=call)]
        )
        queue_id = await manager.enqueue(1, provider_config.id, _request())

        await manager.process_pending()
        item = await manager.store.get(queue_id)
        assert item.status == "pending"
        assert item.retry_count == 1
        assert item.started_at is None
        assert item.error is None

        await manager.process_pending()
        await manager.process_pending()

        item = await manager.store.get(queue_id)
        assert item.status == "failed"
        assert item.retry_count == 3
        assert json.loads(item.error)["kind"] == "server_error"
        # server errors stop after 3 attempts per tick
        assert call.await_count == 9
        assert await _count(session_factory, CallLog, CallLog.status == "failed") == 3
        assert await manager.process_pending() == 0

    @pytest.mark.asyncio
    async def test_config_retry_budget_bounds_calls(self, session_factory, db, strategy_factory, provider_config):
        provider_config.max_retries = 1
        await db.commit()
        call = AsyncMock(side_effect=ProviderError("Rate limit exceeded", kind=ErrorKind.RATE_LIMIT))
        chain = FallbackChain(strategy=RetryStrategy(max_retries=5), failure_threshold=100, sleep=AsyncMock())
        manager = RequestQueueManager(
            QueueStore(session_factory), chain, strategies_for=lambda config: [strategy_factory(call=call)]
        )
        queue_id = await manager.enqueue(1, provider_config.id, _request())

        await manager.process_pending()

        assert call.await_count == 2
        item = await manager.store.get(queue_id)
        assert item.status == "failed"
        assert json.loads(item.error)["kind"] == "rate_limit"

    @pytest.mark.asyncio
    async def test_failure_log_records_provider_and_retries(self, session_factory, strategy_factory, provider_config):
        call = AsyncMock(side_effect=ValueError("unexpected payload"))
        chain = FallbackChain(failure_threshold=100, sleep=AsyncMock())
        manager = RequestQueueManager(
            QueueStore(session_factory), chain, strategies_for=lambda config: [strategy_factory(call=call)]
        )
        await manager.enqueue(1, provider_config.id, _request())

        await manager.process_pending()

        async with session_factory() as session:
            log = (await session.execute(select(CallLog))).scalar_one()
        assert log.status == "failed"
        assert log.provider == "glm"
        assert log.retry_count == 0

    @pytest.mark.asyncio
    async def test_failure_log_counts_retries(self, session_factory, strategy_factory, provider_config):
        call = AsyncMock(side_effect=ProviderError("Server error", kind=ErrorKind.SERVER_ERROR))
        chain = FallbackChain(failure_threshold=100, sleep=AsyncMock())
        manager = RequestQueueManager(
            QueueStore(session_factory), chain, strategies_for=lambda config: [strategy_factory(call=call)]
        )
        await manager.enqueue(1, provider_config.id, _request())

        await manager.process_pending()

        async with session_factory() as session:
            log = (await session.execute(select(CallLog))).scalar_one()
        assert log.provider == "glm"
        assert log.retry_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_failure(self, session_factory, fast_chain, strategy_factory, provider_config):
        call = AsyncMock(side_effect=ProviderError("Authentication failed", kind=ErrorKind.AUTHENTICATION_ERROR))
        manager = RequestQueueManager(
            QueueStore(session_factory), fast_chain, strategies_for=lambda config: [strategy_factory(call=call)]
        )
        queue_id = await manager.enqueue(1, provider_config.id, _request())

        await manager.process_pending()

        item = await manager.store.get(queue_id)
        assert item.status == "failed"
        assert item.retry_count == 1
        assert json.loads(item.error)["kind"] == "authentication_error"
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_processing_error(self, session_factory, fast_chain, provider_config):
        def broken(config):
            raise RuntimeError("strategy lookup exploded")

        manager = RequestQueueManager(QueueStore(session_factory), fast_chain, strategies_for=broken)
        queue_id = await manager.enqueue(1, provider_config.id, _request())

        await manager.process_pending()

        item = await manager.store.get(queue_id)
        assert item.status == "failed"
        assert json.loads(item.error)["kind"] == "processing_error"

    @pytest.mark.asyncio
    async def test_config_deleted_after_admission(self, queue_manager, db, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())
        await db.delete(provider_config)
        await db.commit()

        await queue_manager.process_pending()

        item = await queue_manager.store.get(queue_id)
        assert item.status == "failed"
        assert json.loads(item.error)["kind"] == "config_not_found"

    @pytest.mark.asyncio
    async def test_items_dispatched_concurrently(self, session_factory, fast_chain, strategy_factory, provider_config):
        current = 0
        peak = 0

        async def call(request):
            nonlocal current, peak
            current += 1
            peak = max(peak, current)
            await asyncio.sleep(0.02)
            current -= 1
            return await strategy_factory().call(request)

        manager = RequestQueueManager(
            QueueStore(session_factory), fast_chain, strategies_for=lambda config: [strategy_factory(call=call)]
        )
        for i in range(3):
            await manager.enqueue(1, provider_config.id, _request(str(i)))

        assert await manager.process_pending() == 3
        assert peak == 3


# ---------------------------------------------------------------------------
# Cancel & cleanup
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, queue_manager, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())

        assert await queue_manager.cancel_request(queue_id, 1) is True

        item = await queue_manager.store.get(queue_id)
        assert item.status == "failed"
        assert json.loads(item.error)["kind"] == "cancelled"
        assert await queue_manager.process_pending() == 0

    @pytest.mark.asyncio
    async def test_cancel_twice(self, queue_manager, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())
        await queue_manager.cancel_request(queue_id, 1)
        assert await queue_manager.cancel_request(queue_id, 1) is False

    @pytest.mark.asyncio
    async def test_cancel_other_account(self, queue_manager, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())
        assert await queue_manager.cancel_request(queue_id, 2) is False
        assert (await queue_manager.store.get(queue_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_cancel_completed(self, queue_manager, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())
        await queue_manager.process_pending()
        assert await queue_manager.cancel_request(queue_id, 1) is False


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_only_expired_completed(self, queue_manager, session_factory):
        now = datetime.now(timezone.utc)
        async with session_factory() as session:
            for item_id, status, completed_at in (
                ("queue_old_done", "completed", now - timedelta(days=8)),
                ("queue_new_done", "completed", now - timedelta(days=1)),
                ("queue_old_failed", "failed", now - timedelta(days=8)),
            ):
                session.add(
                    QueueItem(
                        id=item_id,
                        account_id=1,
                        provider_config_id=1,
                        request_payload="{}",
                        status=status,
                        created_at=completed_at,
                        completed_at=completed_at,
                    )
                )
            await session.commit()

        assert await queue_manager.cleanup_expired_items() == 1
        assert await queue_manager.cleanup_expired_items() == 0
        assert await queue_manager.store.get("queue_old_done") is None
        assert await queue_manager.store.get("queue_new_done") is not None
        assert await queue_manager.store.get("queue_old_failed") is not None


# ---------------------------------------------------------------------------
# Status & ticker
# ---------------------------------------------------------------------------


class TestStatus:
    @pytest.mark.asyncio
    async def test_empty_queue(self, queue_manager):
        status = await queue_manager.get_queue_status()
        assert status == {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "total": 0,
            "success_rate": 0.0,
            "avg_wait_time_ms": 0.0,
            "avg_processing_time_ms": 0.0,
        }

    @pytest.mark.asyncio
    async def test_counts_and_success_rate(self, queue_manager, provider_config):
        await queue_manager.enqueue(1, provider_config.id, _request("a"))
        await queue_manager.process_pending()
        second = await queue_manager.enqueue(1, provider_config.id, _request("b"))
        await queue_manager.cancel_request(second, 1)
        await queue_manager.enqueue(1, provider_config.id, _request("c"))

        status = await queue_manager.get_queue_status(account_id=1)

        assert status["completed"] == 1
        assert status["failed"] == 1
        assert status["pending"] == 1
        assert status["total"] == 3
        assert status["success_rate"] == pytest.approx(1 / 3)
        assert status["avg_wait_time_ms"] >= 0
        assert (await queue_manager.get_queue_status(account_id=2))["total"] == 0

    @pytest.mark.asyncio
    async def test_user_queue_status(self, queue_manager, provider_config):
        done = await queue_manager.enqueue(1, provider_config.id, _request("a"))
        await queue_manager.process_pending()
        waiting = await queue_manager.enqueue(1, provider_config.id, _request("b"))

        status = await queue_manager.get_user_queue_status(1)

        assert [i["id"] for i in status["pending"]] == [waiting]
        assert [i["id"] for i in status["recent_completed"]] == [done]
        assert status["processing"] == []
        assert status["recent_failed"] == []


class TestTicker:
    @pytest.mark.asyncio
    async def test_start_dispatches_and_stop_waits(self, queue_manager, provider_config):
        queue_id = await queue_manager.enqueue(1, provider_config.id, _request())

        await queue_manager.start()
        assert queue_manager.running
        for _ in range(200):
            if (await queue_manager.store.get(queue_id)).status == "completed":
                break
            await asyncio.sleep(0.01)
        await queue_manager.stop()

        assert not queue_manager.running
        assert (await queue_manager.store.get(queue_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, queue_manager):
        await queue_manager.start()
        task = queue_manager._ticker
        await queue_manager.start()
        assert queue_manager._ticker is task
        await queue_manager.stop()
        await queue_manager.stop()
