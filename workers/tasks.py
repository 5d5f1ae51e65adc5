"""Celery tasks that drive localization runs."""
from __future__ import annotations

import uuid
from typing import List

from celery import shared_task
from celery.utils.log import get_task_logger

from localize.orchestrator import run_pipeline, stale_queued_runs
from shared.config import get_settings
from shared.db import SyncSessionFactory, get_sync_session
from shared.errors import InvalidTransition, RunNotFound

from .celery_app import LOCALIZE_QUEUE

logger = get_task_logger(__name__)


@shared_task(name="localize.run")
def localize_run_task(run_id: str) -> str:
    run_uuid = uuid.UUID(run_id)
    with get_sync_session() as session:
        try:
            run = run_pipeline(session, run_uuid, session_factory=SyncSessionFactory)
        except (RunNotFound, InvalidTransition) as exc:
            # Deleted, finished or canceled before a worker picked it up.
            logger.warning("Skipping run %s: %s", run_id, exc)
            return "skipped"
        logger.info("Run %s finished with status %s", run_id, run.status.value)
        return run.status.value


@shared_task(name="localize.sweep_queued")
def sweep_queued_runs() -> List[str]:
    """Re-enqueue runs that have sat in ``queued`` longer than the configured age."""

    settings = get_settings()
    with get_sync_session() as session:
        run_ids = stale_queued_runs(session, settings.queued_sweep_seconds)
    for run_id in run_ids:
        logger.info("Re-enqueueing stale queued run %s", run_id)
        localize_run_task.apply_async(args=[str(run_id)], queue=LOCALIZE_QUEUE)
    return [str(run_id) for run_id in run_ids]
