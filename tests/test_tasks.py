"""Tests for the Celery tasks (run synchronously, no broker)."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from celery.exceptions import Retry
from celery.schedules import crontab

from llm_relay.core.config import settings
from llm_relay.gateway.errors import ErrorKind, ProviderError
from llm_relay.gateway.serial_controller import SerialControllerConfig, StrictSerialController
from llm_relay.tasks import queue_tasks
from llm_relay.tasks.celery_app import celery_app
from llm_relay.tasks.queue_tasks import (
    CeleryDelivery,
    cleanup_queue_task,
    dispatch_queue_task,
    process_llm_message_task,
)


def _controller(handler) -> StrictSerialController:
    return StrictSerialController(
        handler,
        SerialControllerConfig(retry_delay_seconds=5, processing_timeout_seconds=2, poll_interval_seconds=0.01),
    )


class TestBeat:
    def test_schedule(self):
        schedule = celery_app.conf.beat_schedule
        assert schedule["dispatch-queue"]["task"] == "dispatch_queue"
        assert isinstance(schedule["dispatch-queue"]["schedule"], timedelta)
        assert schedule["cleanup-queue"]["task"] == "cleanup_queue"
        assert isinstance(schedule["cleanup-queue"]["schedule"], crontab)

    def test_serialized_messages_have_own_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["process_llm_message"] == {"queue": settings.serial_queue_name}
        assert "dispatch_queue" not in routes


class TestQueueTasks:
    def test_dispatch_tick(self):
        with patch("llm_relay.tasks.queue_tasks._dispatch_once", new=AsyncMock(return_value=3)):
            assert dispatch_queue_task.run() == {"processed": 3}

    def test_cleanup(self):
        with patch("llm_relay.tasks.queue_tasks._cleanup_once", new=AsyncMock(return_value=2)):
            assert cleanup_queue_task.run() == {"deleted": 2}

    def test_chain_kept_governor_rebuilt(self, monkeypatch):
        monkeypatch.setattr(queue_tasks, "_chain", None)

        first = queue_tasks._get_chain()
        first_governor = first.governor
        second = queue_tasks._get_chain()

        assert second is first
        assert second.governor is not first_governor


class TestProcessMessage:
    @pytest.fixture(autouse=True)
    def serial_lock(self):
        lock = MagicMock()
        lock.acquire.return_value = True
        with patch("llm_relay.tasks.queue_tasks._serial_lock", return_value=lock):
            yield lock

    def test_success_acks(self):
        handler = AsyncMock()
        with patch("llm_relay.tasks.queue_tasks._get_controller", return_value=_controller(handler)):
            result = process_llm_message_task.run({"id": "msg-1", "payload": {"messages": []}})

        assert result == {"id": "msg-1", "acked": True}
        handler.assert_awaited_once()

    def test_transient_failure_schedules_retry(self):
        handler = AsyncMock(side_effect=ProviderError("Request timed out", kind=ErrorKind.TIMEOUT))
        with (
            patch("llm_relay.tasks.queue_tasks._get_controller", return_value=_controller(handler)),
            patch.object(process_llm_message_task, "retry", side_effect=Retry()) as retry,
        ):
            with pytest.raises(Retry):
                process_llm_message_task.run({"id": "msg-2"})

        retry.assert_called_once_with(countdown=5)

    def test_permanent_failure_is_acked(self):
        handler = AsyncMock(side_effect=ValueError("bad payload"))
        with patch("llm_relay.tasks.queue_tasks._get_controller", return_value=_controller(handler)):
            result = process_llm_message_task.run({"id": "msg-3"})

        assert result == {"id": "msg-3", "acked": True}

    def test_lock_held_around_processing(self, serial_lock):
        held = []

        async def handler(payload):
            held.append(serial_lock.acquire.called and not serial_lock.release.called)

        with patch("llm_relay.tasks.queue_tasks._get_controller", return_value=_controller(handler)):
            process_llm_message_task.run({"id": "msg-4"})

        assert held == [True]
        serial_lock.release.assert_called_once()

    def test_lock_released_before_retry(self, serial_lock):
        handler = AsyncMock(side_effect=ProviderError("Server error", kind=ErrorKind.SERVER_ERROR))
        with (
            patch("llm_relay.tasks.queue_tasks._get_controller", return_value=_controller(handler)),
            patch.object(process_llm_message_task, "retry", side_effect=Retry()),
        ):
            with pytest.raises(Retry):
                process_llm_message_task.run({"id": "msg-5"})

        serial_lock.release.assert_called_once()

    def test_busy_lock_requeues_without_processing(self, serial_lock):
        serial_lock.acquire.return_value = False
        handler = AsyncMock()
        with (
            patch("llm_relay.tasks.queue_tasks._get_controller", return_value=_controller(handler)),
            patch.object(process_llm_message_task, "retry", side_effect=Retry()) as retry,
        ):
            with pytest.raises(Retry):
                process_llm_message_task.run({"id": "msg-6"})

        handler.assert_not_awaited()
        serial_lock.release.assert_not_called()
        retry.assert_called_once_with(countdown=settings.serial_retry_delay_seconds)


class TestSerialLock:
    def test_lock_is_shared_on_broker(self, monkeypatch):
        client = MagicMock()
        from_url = MagicMock(return_value=client)
        monkeypatch.setattr(queue_tasks, "_redis", None)
        monkeypatch.setattr(queue_tasks.redis.Redis, "from_url", from_url)

        queue_tasks._serial_lock()
        queue_tasks._serial_lock()

        from_url.assert_called_once_with(settings.redis_url)
        timeout = settings.serial_processing_timeout_seconds + 30
        client.lock.assert_called_with(settings.serial_lock_key, timeout=timeout, blocking_timeout=timeout)
        assert client.lock.call_count == 2


class TestCeleryDelivery:
    def test_attempts_injected(self):
        delivery = CeleryDelivery("task-1", {"id": "m", "attempts": 0}, attempts=2)
        assert delivery.body["attempts"] == 2

    def test_ack_and_retry(self):
        delivery = CeleryDelivery("task-1", {}, attempts=0)
        delivery.retry(5)
        assert delivery.retry_delay == 5
        assert not delivery.acked
        delivery.ack()
        assert delivery.acked
