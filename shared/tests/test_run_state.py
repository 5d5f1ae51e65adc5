from __future__ import annotations

import sys
from itertools import product
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from shared.errors import InvalidTransition
from shared.models import Base, LocalizationRun, RunStatus, User
from shared.run_state import (
    ALLOWED_RUN_STATUS_TRANSITIONS,
    apply_status,
    can_retry,
    is_terminal,
    next_statuses,
    transition,
    update_status,
)


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    with SessionLocal() as session:
        yield session
    engine.dispose()


def _run(status: RunStatus) -> LocalizationRun:
    return LocalizationRun(id=uuid4(), owner_id=uuid4(), status=status, languages=["fr"])


def _seed_run(session: Session, status: RunStatus) -> LocalizationRun:
    user = User(id=uuid4(), email=f"{uuid4()}@example.com", password_hash="hash")
    run = LocalizationRun(
        id=uuid4(),
        owner_id=user.id,
        status=status,
        languages=["fr"],
        progress={"stage": "queued"},
        recipe={},
    )
    session.add_all([user, run])
    session.commit()
    return run


def test_transition_table_matches_lifecycle() -> None:
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.DRAFT] == {RunStatus.QUEUED}
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.QUEUED] == {RunStatus.RUNNING, RunStatus.CANCELED}
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.RUNNING] == {
        RunStatus.NEEDS_REVIEW,
        RunStatus.DONE,
        RunStatus.FAILED,
        RunStatus.CANCELED,
    }
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.NEEDS_REVIEW] == {RunStatus.RUNNING, RunStatus.DONE}
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.DONE] == frozenset()
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.FAILED] == {RunStatus.QUEUED}
    assert ALLOWED_RUN_STATUS_TRANSITIONS[RunStatus.CANCELED] == {RunStatus.QUEUED}


def test_every_unlisted_pair_is_rejected_and_leaves_run_unchanged() -> None:
    for current, target in product(RunStatus, RunStatus):
        if current == target:
            continue
        run = _run(current)
        if target in ALLOWED_RUN_STATUS_TRANSITIONS[current]:
            assert transition(current, target) == target
            continue
        with pytest.raises(InvalidTransition):
            transition(current, target)
        with pytest.raises(InvalidTransition):
            apply_status(run, target)
        assert run.status == current
        assert run.started_at is None
        assert run.completed_at is None


def test_invalid_transition_message_names_both_statuses() -> None:
    with pytest.raises(InvalidTransition) as excinfo:
        transition(RunStatus.DONE, RunStatus.RUNNING)
    assert str(excinfo.value) == "Invalid status transition: done -> running"


def test_apply_status_stamps_lifecycle_timestamps() -> None:
    run = _run(RunStatus.QUEUED)

    assert apply_status(run, RunStatus.RUNNING) is True
    assert run.started_at is not None
    assert run.completed_at is None

    assert apply_status(run, RunStatus.NEEDS_REVIEW) is True
    assert run.completed_at is None

    assert apply_status(run, RunStatus.DONE) is True
    assert run.status == RunStatus.DONE
    assert run.completed_at is not None


def test_apply_status_same_status_is_noop() -> None:
    run = _run(RunStatus.RUNNING)
    assert apply_status(run, RunStatus.RUNNING) is False
    assert run.started_at is None


def test_status_helpers() -> None:
    assert is_terminal(RunStatus.DONE)
    assert is_terminal(RunStatus.CANCELED)
    assert not is_terminal(RunStatus.FAILED)
    assert can_retry(RunStatus.FAILED)
    assert not can_retry(RunStatus.DONE)
    assert next_statuses(RunStatus.RUNNING) == [
        RunStatus.NEEDS_REVIEW,
        RunStatus.DONE,
        RunStatus.FAILED,
        RunStatus.CANCELED,
    ]


def test_update_status_persists_stage_and_error(session: Session) -> None:
    run = _seed_run(session, RunStatus.RUNNING)

    updated = update_status(session, run.id, RunStatus.FAILED, stage="generating", error="boom")

    assert updated.status == RunStatus.FAILED
    assert updated.stage == "generating"
    assert updated.progress["stage"] == "generating"
    assert updated.error == "boom"


def test_update_status_rejects_unreachable_target(session: Session) -> None:
    run = _seed_run(session, RunStatus.DONE)

    with pytest.raises(InvalidTransition):
        update_status(session, run.id, RunStatus.RUNNING)

    session.expire_all()
    assert session.get(LocalizationRun, run.id).status == RunStatus.DONE
