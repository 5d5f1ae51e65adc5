from __future__ import annotations

import sys
from pathlib import Path

from uuid import uuid4

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from localize.orchestrator import cancel_run, create_run, edit_region, run_pipeline
from localize.pipeline import LanguagePipeline
from shared.errors import InvalidTransition, StorageError
from shared.models import (
    Base,
    LanguageState,
    LanguageStatus,
    LocalizationRun,
    Region,
    RunCheckpoint,
    RunLog,
    RunOutput,
    RunStatus,
    User,
)


def _states(session, run_id) -> dict[str, LanguageState]:
    rows = session.scalars(select(LanguageState).where(LanguageState.run_id == run_id))
    return {state.language_code: state for state in rows}


def _outputs(session, run_id) -> list[RunOutput]:
    return list(session.scalars(select(RunOutput).where(RunOutput.run_id == run_id)))


def _checkpoints(session, run_id, language=None) -> list[RunCheckpoint]:
    stmt = select(RunCheckpoint).where(RunCheckpoint.run_id == run_id)
    if language:
        stmt = stmt.where(RunCheckpoint.language_code == language)
    return list(session.scalars(stmt))


def _region(session, run_id, key="headline") -> Region:
    return session.scalars(select(Region).where(Region.run_id == run_id, Region.key == key)).one()


def test_two_languages_complete_and_charge_twelve_credits(
    session, services, store, renderer, make_user, make_request
) -> None:
    user = make_user(balance=100)

    run = create_run(session, store, user.id, make_request())
    assert run.status == RunStatus.QUEUED
    assert run.recipe["billing"]["credits_charged"] == 12

    run = run_pipeline(session, run.id, services=services)

    assert run.status == RunStatus.DONE
    assert run.requires_review is False
    assert run.completed_at is not None
    assert run.progress["completed_languages"] == 2
    assert run.progress["images_generated_total"] == 2
    assert run.progress["credits_spent_total"] == 12

    region = _region(session, run.id)
    assert region.processed_texts == {"fr": "Grand Solde", "de": "Ausverkauf"}
    assert region.overflow_detected is False

    assert len(_outputs(session, run.id)) == 2
    assert len(_checkpoints(session, run.id)) == 2
    states = _states(session, run.id)
    assert {state.status for state in states.values()} == {LanguageStatus.COMPLETED}
    assert states["fr"].images_generated == 1

    session.expire_all()
    assert session.get(User, user.id).credits_balance == 88

    assert len(renderer.calls) == 2
    assert renderer.calls[0]["aspect_ratio"] == "4:3"
    assert renderer.calls[0]["resolution"] == "2K"
    assert "1. Grand Solde" in renderer.calls[0]["instruction"]

    messages = [log.message for log in session.scalars(select(RunLog).where(RunLog.run_id == run.id))]
    assert "Run created" in messages
    assert "Run finished: done" in messages


def test_overflowing_translation_routes_run_to_review(
    session, services, store, translator, make_user, make_request
) -> None:
    translator.table["French"] = {"headline": "Big Sale Big Sale!"}
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request())

    run = run_pipeline(session, run.id, services=services)

    assert run.status == RunStatus.NEEDS_REVIEW
    assert run.requires_review is True
    assert _region(session, run.id).overflow_detected is True
    assert _states(session, run.id)["fr"].telemetry["overflow"] is True


def test_edit_regenerates_only_the_edited_language(
    session, services, store, renderer, make_user, make_request
) -> None:
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request(review_required=True))
    run = run_pipeline(session, run.id, services=services)
    assert run.status == RunStatus.NEEDS_REVIEW
    assert len(renderer.calls) == 2
    german_asset = next(
        output.asset_id for output in _outputs(session, run.id) if output.language_code == "de"
    )

    edit_region(session, run.id, "headline", "fr", "Soldes")
    run = run_pipeline(session, run.id, services=services)

    assert len(renderer.calls) == 3
    assert "1. Soldes" in renderer.calls[-1]["instruction"]
    assert run.status == RunStatus.NEEDS_REVIEW
    assert run.progress["images_generated_total"] == 3
    assert run.progress["completed_languages"] == 2
    assert len(_checkpoints(session, run.id, "fr")) == 2
    assert len(_checkpoints(session, run.id, "de")) == 1
    german = [output for output in _outputs(session, run.id) if output.language_code == "de"]
    assert [output.asset_id for output in german] == [german_asset]


def test_repeat_pass_without_edits_reuses_every_image(
    session, services, store, renderer, make_user, make_request
) -> None:
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request(review_required=True))
    run_pipeline(session, run.id, services=services)

    run = run_pipeline(session, run.id, services=services)

    assert len(renderer.calls) == 2
    assert run.progress["images_generated_total"] == 2
    assert len(_outputs(session, run.id)) == 2
    states = _states(session, run.id)
    assert states["fr"].telemetry["images_reused"] == 1
    assert states["fr"].telemetry["translation"] == "reused"


def test_translation_failure_marks_language_and_keeps_source_text(
    session, services, store, translator, make_user, make_request
) -> None:
    translator.failing.add("German")
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request())

    run = run_pipeline(session, run.id, services=services)

    assert run.status == RunStatus.DONE
    states = _states(session, run.id)
    assert states["fr"].status == LanguageStatus.COMPLETED
    assert states["de"].status == LanguageStatus.ERROR
    assert states["de"].telemetry["translation_fallback"] is True
    assert "German" in states["de"].notes
    assert _region(session, run.id).processed_texts["de"] == "Big Sale"
    outputs = _outputs(session, run.id)
    assert [output.language_code for output in outputs] == ["fr"]


def test_render_failure_marks_language_and_continues(
    session, services, store, renderer, make_user, make_request
) -> None:
    renderer.failing.add("French")
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request())

    run = run_pipeline(session, run.id, services=services)

    assert run.status == RunStatus.DONE
    states = _states(session, run.id)
    assert states["fr"].status == LanguageStatus.ERROR
    assert states["de"].status == LanguageStatus.COMPLETED
    assert run.progress["images_generated_total"] == 1
    assert [output.language_code for output in _outputs(session, run.id)] == ["de"]


def test_storage_failure_fails_the_run(
    session, services, store, make_user, make_request
) -> None:
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request())
    store.fail_reads = True

    with pytest.raises(StorageError):
        run_pipeline(session, run.id, services=services)

    session.expire_all()
    stored = session.get(LocalizationRun, run.id)
    assert stored.status == RunStatus.FAILED
    assert "Failed to read object" in stored.error


def test_cancel_during_first_language_stops_all_work(
    session, services, store, translator, renderer, make_user, make_request
) -> None:
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request())
    run_id = run.id
    translator.before_translate = lambda language: cancel_run(session, run_id)

    run = run_pipeline(session, run_id, services=services)

    assert run.status == RunStatus.CANCELED
    assert renderer.calls == []
    assert _outputs(session, run_id) == []
    states = _states(session, run_id)
    assert states["fr"].status == LanguageStatus.SKIPPED
    assert states["de"].status == LanguageStatus.SKIPPED
    assert translator.calls == ["French"]


def test_finished_run_cannot_be_started_again(
    session, services, store, make_user, make_request
) -> None:
    user = make_user(balance=100)
    run = create_run(session, store, user.id, make_request())
    run_pipeline(session, run.id, services=services)

    with pytest.raises(InvalidTransition):
        run_pipeline(session, run.id, services=services)

    session.expire_all()
    assert session.get(LocalizationRun, run.id).status == RunStatus.DONE


@pytest.fixture()
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'runs.db'}", connect_args={"timeout": 30}
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.mark.parametrize("overflowing", [False, True])
def test_parallel_languages_keep_progress_consistent(
    file_session_factory, services, store, translator, renderer, make_request, overflowing
) -> None:
    translator.table["Spanish"] = {"headline": "Rebajas"}
    if overflowing:
        translator.table["German"] = {"headline": "Sommerschlussverkauf"}

    with file_session_factory() as session:
        user = User(
            id=uuid4(),
            email=f"{uuid4()}@example.com",
            password_hash="hash",
            credits_balance=100,
        )
        session.add(user)
        session.commit()
        request = make_request(languages=["fr", "de", "es"], images_per_language=2)
        run = create_run(session, store, user.id, request)

        pipeline = LanguagePipeline(
            session, services, session_factory=file_session_factory, concurrency=3
        )
        run = pipeline.run(run.id)
        session.expire_all()

        assert run.progress["completed_languages"] == 3
        assert run.progress["images_generated_total"] == 6
        assert run.progress["credits_spent_total"] == 36
        assert sorted(run.progress["finished_languages"]) == ["de", "es", "fr"]
        assert len(renderer.calls) == 6
        assert len(_outputs(session, run.id)) == 6
        assert set(_region(session, run.id).processed_texts) == {"fr", "de", "es"}
        states = _states(session, run.id)
        assert {state.status for state in states.values()} == {LanguageStatus.COMPLETED}
        if overflowing:
            assert run.status == RunStatus.NEEDS_REVIEW
            assert run.requires_review is True
        else:
            assert run.status == RunStatus.DONE
            assert run.requires_review is False
