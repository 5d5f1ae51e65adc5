"""Run status state machine.

Every status change of a :class:`~shared.models.LocalizationRun` goes through
:func:`apply_status`, which validates the move against
``ALLOWED_RUN_STATUS_TRANSITIONS`` and stamps the lifecycle timestamps.
"""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import InvalidTransition, RunNotFound, StorageError
from .models import LocalizationRun, RunStatus

MAX_ATTEMPTS = 8


ALLOWED_RUN_STATUS_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.DRAFT: frozenset({RunStatus.QUEUED}),
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.CANCELED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.NEEDS_REVIEW, RunStatus.DONE, RunStatus.FAILED, RunStatus.CANCELED}
    ),
    RunStatus.NEEDS_REVIEW: frozenset({RunStatus.RUNNING, RunStatus.DONE}),
    RunStatus.DONE: frozenset(),
    RunStatus.FAILED: frozenset({RunStatus.QUEUED}),
    RunStatus.CANCELED: frozenset({RunStatus.QUEUED}),
}

TERMINAL_STATUSES = frozenset({RunStatus.DONE, RunStatus.CANCELED})
RETRYABLE_STATUSES = frozenset({RunStatus.FAILED, RunStatus.CANCELED})

STATUS_LABELS: Dict[RunStatus, str] = {
    RunStatus.DRAFT: "Draft",
    RunStatus.QUEUED: "Queued",
    RunStatus.RUNNING: "Processing",
    RunStatus.NEEDS_REVIEW: "Needs Review",
    RunStatus.DONE: "Completed",
    RunStatus.FAILED: "Failed",
    RunStatus.CANCELED: "Canceled",
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return RunStatus(target) in ALLOWED_RUN_STATUS_TRANSITIONS.get(RunStatus(current), frozenset())


def transition(current: RunStatus, target: RunStatus) -> RunStatus:
    """Return ``target`` when it is reachable from ``current``."""

    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return RunStatus(target)


def next_statuses(current: RunStatus) -> List[RunStatus]:
    allowed = ALLOWED_RUN_STATUS_TRANSITIONS.get(RunStatus(current), frozenset())
    return sorted(allowed, key=lambda status: list(RunStatus).index(status))


def is_terminal(status: RunStatus) -> bool:
    return RunStatus(status) in TERMINAL_STATUSES


def can_retry(status: RunStatus) -> bool:
    return RunStatus(status) in RETRYABLE_STATUSES


def apply_status(run: LocalizationRun, target: RunStatus) -> bool:
    """Move ``run`` to ``target`` in memory; the caller commits.

    Requesting the status the run already has is a no-op and returns
    ``False``.  Any other request is validated by :func:`transition`.
    """

    target = RunStatus(target)
    current = RunStatus(run.status)
    if target == current:
        return False

    run.status = transition(current, target)
    now = datetime.now(UTC)
    run.updated_at = now
    if target == RunStatus.RUNNING:
        run.started_at = now
    if target == RunStatus.DONE:
        # Covers reviewer confirmation (needs_review -> done) as well.
        run.completed_at = now
    return True


def update_status(
    session: Session,
    run_id: uuid.UUID,
    target: RunStatus,
    *,
    stage: Optional[str] = None,
    error: Optional[str] = None,
) -> LocalizationRun:
    """Validate and persist a status change, retrying on version conflicts.

    The run is re-read on every attempt so the transition is checked
    against the status another writer may have committed meanwhile.
    """

    for _ in range(MAX_ATTEMPTS):
        run = session.get(LocalizationRun, run_id, populate_existing=True)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        apply_status(run, target)
        if stage:
            run.stage = stage
            progress = dict(run.progress or {})
            progress["stage"] = stage
            run.progress = progress
        if error is not None:
            run.error = error
        try:
            session.commit()
        except StaleDataError:
            session.rollback()
            continue
        return run
    raise StorageError(f"Status of run {run_id} kept changing; giving up")
