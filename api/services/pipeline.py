from __future__ import annotations

import uuid

from workers.tasks import LOCALIZE_QUEUE, localize_run_task


def enqueue_run(run_id: uuid.UUID | str) -> str:
    """Hand a queued run to the Celery workers; returns the task id."""

    result = localize_run_task.apply_async(args=[str(run_id)], queue=LOCALIZE_QUEUE)
    return result.id
