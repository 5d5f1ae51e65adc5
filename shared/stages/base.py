"""Common logic for per-language pipeline stages."""
from __future__ import annotations

import abc
import datetime as dt
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import ExternalServiceError, StorageError
from ..logs import emit_log
from ..models import LanguageState, LanguageStatus, LocalizationRun, Region, RunStatus


class LanguageCanceled(Exception):
    """Raised inside a stage once the run is observed as canceled."""


class StageContext:
    """Container for the objects a language stage needs to operate."""

    def __init__(
        self,
        session: Session,
        run: LocalizationRun,
        language: str,
        regions: List[Region],
        services: Any,
    ):
        self.session = session
        self.run = run
        self.language = language
        self.regions = regions
        self.services = services


class LanguageStage(abc.ABC):
    name: str

    def __init__(self, context: StageContext):
        self.context = context
        self.telemetry: Dict[str, Any] = {}

    @abc.abstractmethod
    def execute(self) -> Dict[str, Any]:
        """Perform the language work and return telemetry details."""

    @property
    def language(self) -> str:
        return self.context.language

    def state(self) -> LanguageState:
        session = self.context.session
        run = self.context.run
        state = session.query(LanguageState).filter_by(
            run_id=run.id, language_code=self.language
        ).one_or_none()
        if state is None:
            languages = list(run.languages or [])
            position = languages.index(self.language) if self.language in languages else 0
            state = LanguageState(
                id=uuid.uuid4(),
                run_id=run.id,
                language_code=self.language,
                position=position,
                telemetry={},
            )
            session.add(state)
        return state

    def ensure_not_canceled(self) -> None:
        """Re-read the run status; stop scheduling work once it is canceled."""

        session = self.context.session
        run = session.get(LocalizationRun, self.context.run.id, populate_existing=True)
        if run is None or run.status == RunStatus.CANCELED:
            raise LanguageCanceled(self.language)

    def update_state(
        self,
        status: LanguageStatus,
        telemetry: Optional[Dict[str, Any]] = None,
        notes: str | None = None,
        images_generated: int | None = None,
    ) -> LanguageState:
        session = self.context.session
        state = self.state()
        now = dt.datetime.now(dt.UTC)
        if status == LanguageStatus.RUNNING:
            state.started_at = now
            state.finished_at = None
            state.notes = ""
        if status in {LanguageStatus.COMPLETED, LanguageStatus.ERROR, LanguageStatus.SKIPPED}:
            state.finished_at = now
        state.status = status
        if telemetry:
            merged = dict(state.telemetry or {})
            merged.update(telemetry)
            state.telemetry = merged
        if notes:
            state.notes = notes
        if images_generated is not None:
            state.images_generated = images_generated
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Failed to update language state for {self.language}") from exc
        session.refresh(state)
        return state

    def run(self) -> LanguageState:
        """Execute the stage, absorbing external-service failures into the state.

        Translation and generation failures mark the language ``error`` and
        return normally so the next language can start.  Storage failures
        and anything unexpected also mark the language but are re-raised.
        """

        session = self.context.session
        run = self.context.run

        emit_log(session, run.id, f"Starting language: {self.language}", metadata={"language": self.language})
        self.update_state(LanguageStatus.RUNNING)
        try:
            telemetry = self.execute()
        except LanguageCanceled:
            session.rollback()
            state = self.update_state(
                LanguageStatus.SKIPPED,
                telemetry=self.telemetry,
                notes="Run canceled",
                images_generated=int(self.telemetry.get("images_generated", 0)),
            )
            emit_log(
                session,
                run.id,
                f"Language {self.language} skipped after cancellation",
                level="warning",
                metadata={"language": self.language},
            )
            return state
        except ExternalServiceError as exc:
            session.rollback()
            state = self.update_state(
                LanguageStatus.ERROR,
                telemetry=self.telemetry,
                notes=str(exc),
                images_generated=int(self.telemetry.get("images_generated", 0)),
            )
            emit_log(
                session,
                run.id,
                f"Language {self.language} failed",
                level="error",
                metadata={"language": self.language, "error": str(exc)},
            )
            return state
        except Exception as exc:
            session.rollback()
            self.update_state(LanguageStatus.ERROR, telemetry=self.telemetry, notes=str(exc))
            raise
        else:
            state = self.update_state(
                LanguageStatus.COMPLETED,
                telemetry=telemetry,
                images_generated=int(telemetry.get("images_generated", 0)),
            )
            emit_log(
                session,
                run.id,
                f"Completed language: {self.language}",
                metadata={"language": self.language, "telemetry": telemetry},
            )
            return state
