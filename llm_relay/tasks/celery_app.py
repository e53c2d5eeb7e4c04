from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from llm_relay.core.config import settings

celery_app = Celery(
    "llm_relay",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Celery Beat schedule: dispatch tick on a fixed interval,
# retention sweep once an hour.
celery_app.conf.beat_schedule = {
    "dispatch-queue": {
        "task": "dispatch_queue",
        "schedule": timedelta(seconds=settings.queue_dispatch_interval_seconds),
    },
    "cleanup-queue": {
        "task": "cleanup_queue",
        "schedule": crontab(minute=0),  # every hour
    },
}

# Serialized messages go to their own queue, consumed by a single worker process:
#   celery -A llm_relay.tasks.celery_app worker -Q llm_serial --concurrency=1
celery_app.conf.task_routes = {
    "process_llm_message": {"queue": settings.serial_queue_name},
}

# Explicit include (needed for CLI worker startup)
celery_app.conf.include = [
    "llm_relay.tasks.queue_tasks",
]
