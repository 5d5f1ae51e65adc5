"""Celery application configuration."""
from __future__ import annotations

from celery import Celery
from kombu import Queue

from shared.config import get_settings

LOCALIZE_QUEUE = "localize"

settings = get_settings()

celery_app = Celery(
    "localizer",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=["workers.tasks"],
)

celery_app.conf.task_default_queue = LOCALIZE_QUEUE
celery_app.conf.task_queues = (Queue(LOCALIZE_QUEUE, routing_key=LOCALIZE_QUEUE),)
celery_app.conf.task_routes = {
    "localize.*": {"queue": LOCALIZE_QUEUE, "routing_key": LOCALIZE_QUEUE},
}
celery_app.conf.beat_schedule = {
    "localize-sweep-queued": {
        "task": "localize.sweep_queued",
        "schedule": float(max(settings.queued_sweep_seconds, 60)),
    }
}
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
