"""Versioned merge-patch updates of ``LocalizationRun.progress``.

``LocalizationRun.version`` is the mapper's ``version_id_col``: a flush that
races another writer raises ``StaleDataError``.  Updates re-read the run,
re-apply the patch and retry, so parallel language workers never lose a
counter increment.
"""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import RunNotFound, StorageError
from .models import LocalizationRun, RunStatus
from .run_state import apply_status

MAX_ATTEMPTS = 8

ProgressMutator = Callable[[Dict[str, Any]], None]


def seed_progress(
    languages: list[str],
    *,
    images_planned: int,
    credits_planned: int,
    credits_per_image: int,
) -> Dict[str, Any]:
    return {
        "total_languages": len(languages),
        "completed_languages": 0,
        "current_language": languages[0] if languages else None,
        "stage": "queued",
        "images_planned_total": images_planned,
        "images_generated_total": 0,
        "credits_planned_total": credits_planned,
        "credits_spent_total": 0,
        "credits_per_image": credits_per_image,
        "finished_languages": [],
    }


def update_progress(
    session: Session,
    run_id: uuid.UUID,
    mutate: ProgressMutator,
    *,
    stage: Optional[str] = None,
    requires_review: bool = False,
    status: Optional[RunStatus] = None,
    error: Optional[str] = None,
) -> LocalizationRun:
    """Apply ``mutate`` to a fresh copy of the run's progress and commit.

    ``requires_review`` only ever sets the flag; it is never cleared here.
    A ``status`` change is validated against the freshly read run and
    committed together with the progress, so a rejected transition writes
    nothing.
    """

    for _ in range(MAX_ATTEMPTS):
        run = session.get(LocalizationRun, run_id, populate_existing=True)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        if status is not None:
            apply_status(run, status)
        if error is not None:
            run.error = error
        progress = dict(run.progress or {})
        mutate(progress)
        if stage:
            progress["stage"] = stage
            run.stage = stage
        _enforce_invariants(run, progress)
        run.progress = progress
        if requires_review:
            run.requires_review = True
        run.updated_at = datetime.now(UTC)
        try:
            session.commit()
        except StaleDataError:
            session.rollback()
            continue
        return run
    raise StorageError(f"Progress of run {run_id} kept changing; giving up")


def merge_progress(
    session: Session,
    run_id: uuid.UUID,
    patch: Mapping[str, Any],
    *,
    stage: Optional[str] = None,
) -> LocalizationRun:
    """Shallow merge of ``patch`` into the stored progress."""

    def apply(progress: Dict[str, Any]) -> None:
        progress.update(patch)

    return update_progress(session, run_id, apply, stage=stage)


def record_language_finished(
    session: Session,
    run_id: uuid.UUID,
    language: str,
    *,
    images_generated: int,
    next_language: Optional[str],
    stage: Optional[str] = None,
    requires_review: bool = False,
) -> LocalizationRun:
    """Count ``language`` as completed and add its freshly generated images."""

    def apply(progress: Dict[str, Any]) -> None:
        finished = list(progress.get("finished_languages") or [])
        if language not in finished:
            finished.append(language)
        progress["finished_languages"] = finished
        progress["completed_languages"] = max(
            int(progress.get("completed_languages") or 0), len(finished)
        )
        progress["current_language"] = next_language
        generated = int(progress.get("images_generated_total") or 0) + images_generated
        progress["images_generated_total"] = generated
        per_image = int(progress.get("credits_per_image") or 0)
        if per_image > 0:
            progress["credits_spent_total"] = generated * per_image

    return update_progress(
        session, run_id, apply, stage=stage, requires_review=requires_review
    )


def _enforce_invariants(run: LocalizationRun, progress: Dict[str, Any]) -> None:
    previous = dict(run.progress or {})
    total = int(progress.get("total_languages") or len(run.languages or []))
    completed = int(progress.get("completed_languages") or 0)
    completed = max(completed, int(previous.get("completed_languages") or 0))
    progress["completed_languages"] = min(completed, total)
