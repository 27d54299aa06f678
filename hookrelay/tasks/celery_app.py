"""Celery application — Redis broker, beat schedule for the webhook retry sweep."""

from celery import Celery

from hookrelay.config import get_settings

settings = get_settings()

celery_app = Celery(
    "hookrelay",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["hookrelay.tasks.retry_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "process-webhook-retries": {
            "task": "hookrelay.tasks.retry_tasks.process_webhook_retries",
            "schedule": float(settings.retry_poll_interval_seconds),
        },
    },
)
