"""Per-language localization pipeline.

For every target language of a run, in order: translate the regions (or
reuse stored translations), recompute overflow, generate the image variants
that have no valid checkpoint, then count the language as completed.  A
failing language is recorded on its :class:`LanguageState` and the next
language starts; only storage failures end the run.
"""
from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from image.generator import DEFAULT_RESOLUTION, RenderClient, RenderedImage, RenderError
from nlp.translator import TranslationClient, TranslationError, TranslationItem
from shared.checkpoints import region_text, reusable_checkpoint, record_checkpoint, translation_hash
from shared.config import get_settings
from shared.credits import normalize_images_per_language
from shared.errors import InvalidTransition, RunNotFound, StorageError
from shared.logs import close_stream, emit_log
from shared.models import (
    Asset,
    AssetKind,
    LanguageState,
    LanguageStatus,
    LocalizationRun,
    RunOutput,
    RunStatus,
)
from shared.pipeline import language_name
from shared.progress import merge_progress, record_language_finished
from shared.recipes import Recipe, render_instruction
from shared.regions import has_translation, load_regions, set_language_texts
from shared.run_state import update_status
from shared.stages.base import LanguageStage, StageContext
from shared.storage import BlobStore, get_storage, output_key

RUNNABLE_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.NEEDS_REVIEW})


@dataclass
class LocalizationServices:
    """External collaborators used while processing a run."""

    translator: TranslationClient
    renderer: RenderClient
    storage: BlobStore

    def close(self) -> None:
        self.translator.close()
        self.renderer.close()


def build_services(storage: Optional[BlobStore] = None) -> LocalizationServices:
    settings = get_settings()
    return LocalizationServices(
        translator=TranslationClient(
            settings.translation_provider,
            model=settings.translation_model,
            api_key=settings.translation_api_key,
            base_url=settings.translation_base_url,
        ),
        renderer=RenderClient(
            settings.image_provider,
            model=settings.image_model,
            api_key=settings.image_api_key,
            max_retries=settings.image_max_retries,
            backoff_seconds=settings.image_backoff_seconds,
        ),
        storage=storage or get_storage(),
    )


def run_recipe(run: LocalizationRun) -> Recipe:
    try:
        return Recipe((run.recipe or {}).get("mode") or Recipe.TRANSLATION)
    except ValueError:
        return Recipe.TRANSLATION


def image_options(run: LocalizationRun) -> Dict[str, Any]:
    return dict((run.recipe or {}).get("image_options") or {})


def skip_pending_languages(session: Session, run_id: uuid.UUID, notes: str = "Run canceled") -> int:
    """Mark languages that never started as skipped; returns how many changed."""

    states = (
        session.query(LanguageState)
        .filter_by(run_id=run_id, status=LanguageStatus.PENDING)
        .all()
    )
    for state in states:
        state.status = LanguageStatus.SKIPPED
        state.notes = notes
    session.commit()
    return len(states)


class LocalizeLanguageStage(LanguageStage):
    """Translate, overflow-check and render one language of a run."""

    name = "localize"

    def execute(self) -> Dict[str, Any]:
        self.telemetry.update(
            {
                "images_generated": 0,
                "images_reused": 0,
                "translation_fallback": False,
                "overflow": False,
            }
        )
        self.ensure_not_canceled()
        self.translate()
        self.generate()
        return self.telemetry

    def translate(self) -> None:
        context = self.context
        session = context.session
        regions = context.regions
        previous = dict(self.state().telemetry or {})

        if has_translation(regions, self.language) and not previous.get("translation_fallback"):
            texts = {region.key: region_text(region, self.language) for region in regions}
            self.telemetry["translation"] = "reused"
        elif not regions:
            texts = {}
            self.telemetry["translation"] = "empty"
        else:
            items = [TranslationItem(id=region.key, source_text=region.source_text) for region in regions]
            try:
                texts = context.services.translator.translate(
                    items, language_name(self.language), run_recipe(context.run)
                )
            except TranslationError:
                # Keep the source text visible for manual correction; the next
                # attempt translates again because of the fallback marker.
                fallback = {region.key: region.source_text for region in regions}
                self.telemetry["overflow"] = set_language_texts(session, regions, self.language, fallback)
                self.telemetry["translation_fallback"] = True
                raise
            self.telemetry["translation"] = "translated"

        self.telemetry["overflow"] = set_language_texts(session, regions, self.language, texts)
        if self.telemetry["overflow"]:
            emit_log(
                session,
                context.run.id,
                f"Text overflow detected for {self.language}",
                level="warning",
                metadata={
                    "language": self.language,
                    "regions": [region.key for region in regions if region.overflow_detected],
                },
            )

    def generate(self) -> None:
        context = self.context
        session = context.session
        run = context.run
        regions = context.regions
        options = image_options(run)
        variants = normalize_images_per_language(options.get("images_per_language"))
        current_hash = translation_hash(regions, self.language)
        instruction = render_instruction(
            language_name(self.language),
            [region_text(region, self.language) for region in regions],
        )
        merge_progress(session, run.id, {"current_language": self.language}, stage="generating")

        source_bytes: Optional[bytes] = None
        for variant_index in range(variants):
            self.ensure_not_canceled()
            checkpoint = reusable_checkpoint(
                session, run.id, self.language, variant_index, current_hash
            )
            if checkpoint is not None:
                self.telemetry["images_reused"] += 1
                emit_log(
                    session,
                    run.id,
                    f"Reused {self.language} variant {variant_index}",
                    metadata={
                        "language": self.language,
                        "variant_index": variant_index,
                        "asset_id": str(checkpoint.output_asset_id),
                    },
                )
                continue

            if source_bytes is None:
                source_bytes = context.services.storage.get(run.source_asset.storage_key)
            rendered = context.services.renderer.render(
                source_bytes,
                instruction,
                num_images=1,
                aspect_ratio=options.get("aspect_ratio") or run.source_asset.aspect_ratio,
                resolution=options.get("resolution") or DEFAULT_RESOLUTION,
            )
            if not rendered:
                raise RenderError(f"No image returned for {self.language} variant {variant_index}")

            asset = self.store_output(rendered[0], variant_index)
            record_checkpoint(session, run.id, self.language, variant_index, current_hash, asset.id)
            self.telemetry["images_generated"] += 1
            emit_log(
                session,
                run.id,
                f"Generated {self.language} variant {variant_index}",
                metadata={
                    "language": self.language,
                    "variant_index": variant_index,
                    "asset_id": str(asset.id),
                },
            )

    def store_output(self, image: RenderedImage, variant_index: int) -> Asset:
        context = self.context
        session = context.session
        run = context.run
        storage = context.services.storage
        asset_id = uuid.uuid4()
        key = output_key(run.owner_id, run.id, asset_id)
        storage.put(key, image.payload, image.mime_type)

        asset = Asset(
            id=asset_id,
            owner_id=run.owner_id,
            kind=AssetKind.OUTPUT,
            storage_key=key,
            public_url=storage.public_url(key),
            filename=f"{self.language}-{variant_index + 1}.jpg",
            mime_type=image.mime_type,
            width=image.width,
            height=image.height,
            size=len(image.payload),
        )
        session.add(asset)
        session.add(
            RunOutput(
                id=uuid.uuid4(),
                run_id=run.id,
                language_code=self.language,
                variant_index=variant_index,
                asset_id=asset_id,
            )
        )
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Failed to record output for {self.language}#{variant_index}") from exc
        return asset


class LanguagePipeline:
    """Drive every language of a run and settle its final status."""

    def __init__(
        self,
        session: Session,
        services: LocalizationServices,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.session = session
        self.services = services
        self.session_factory = session_factory
        configured = concurrency if concurrency is not None else get_settings().language_concurrency
        self.concurrency = max(1, int(configured))

    def run(self, run_id: uuid.UUID) -> LocalizationRun:
        run = self.start(run_id)
        languages = list(run.languages or [])
        try:
            if self.concurrency > 1 and self.session_factory is not None and len(languages) > 1:
                self._run_parallel(run_id, languages)
            else:
                for index, language in enumerate(languages):
                    next_language = languages[index + 1] if index + 1 < len(languages) else None
                    if self.process_language(self.session, run_id, language, next_language) is None:
                        break
            return self.finalize(run_id)
        except Exception as exc:
            self.fail(run_id, exc)
            raise

    def start(self, run_id: uuid.UUID) -> LocalizationRun:
        session = self.session
        run = session.get(LocalizationRun, run_id, populate_existing=True)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        if run.status not in RUNNABLE_STATUSES:
            raise InvalidTransition(run.status, RunStatus.RUNNING)
        run = update_status(session, run_id, RunStatus.RUNNING, stage="translating", error="")
        emit_log(
            session,
            run_id,
            "Run started",
            metadata={"languages": list(run.languages or []), "retries": run.retries},
        )
        return run

    def _run_parallel(self, run_id: uuid.UUID, languages: List[str]) -> None:
        def work(index: int, language: str) -> Optional[LanguageState]:
            next_language = languages[index + 1] if index + 1 < len(languages) else None
            with self.session_factory() as session:
                return self.process_language(session, run_id, language, next_language)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = [
                executor.submit(work, index, language) for index, language in enumerate(languages)
            ]
            for future in futures:
                future.result()

    def process_language(
        self,
        session: Session,
        run_id: uuid.UUID,
        language: str,
        next_language: Optional[str],
    ) -> Optional[LanguageState]:
        """Process one language; ``None`` means the run was canceled first."""

        run = session.get(LocalizationRun, run_id, populate_existing=True)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        if run.status == RunStatus.CANCELED:
            return None

        merge_progress(session, run_id, {"current_language": language}, stage="translating")
        regions = load_regions(session, run_id)
        stage = LocalizeLanguageStage(
            StageContext(session, run, language, regions, self.services)
        )
        state = stage.run()
        if state.status == LanguageStatus.SKIPPED:
            return None

        record_language_finished(
            session,
            run_id,
            language,
            images_generated=int(stage.telemetry.get("images_generated", 0)),
            next_language=next_language,
            requires_review=bool(stage.telemetry.get("overflow")),
        )
        return state

    def finalize(self, run_id: uuid.UUID) -> LocalizationRun:
        session = self.session
        run = session.get(LocalizationRun, run_id, populate_existing=True)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        if run.status == RunStatus.CANCELED:
            skip_pending_languages(session, run_id)
            emit_log(session, run_id, "Run canceled", level="warning")
            close_stream(run_id)
            return run

        target = RunStatus.NEEDS_REVIEW if run.requires_review else RunStatus.DONE
        try:
            run = update_status(session, run_id, target, stage="complete")
        except InvalidTransition:
            run = session.get(LocalizationRun, run_id, populate_existing=True)
            if run is None or run.status != RunStatus.CANCELED:
                raise
            skip_pending_languages(session, run_id)
            emit_log(session, run_id, "Run canceled", level="warning")
            close_stream(run_id)
            return run

        progress = dict(run.progress or {})
        emit_log(
            session,
            run_id,
            f"Run finished: {run.status.value}",
            metadata={
                "status": run.status.value,
                "completed_languages": progress.get("completed_languages"),
                "images_generated_total": progress.get("images_generated_total"),
            },
        )
        close_stream(run_id)
        return run

    def fail(self, run_id: uuid.UUID, exc: Exception) -> None:
        session = self.session
        session.rollback()
        run = session.get(LocalizationRun, run_id, populate_existing=True)
        if run is None or run.status != RunStatus.RUNNING:
            return
        update_status(session, run_id, RunStatus.FAILED, error=str(exc) or exc.__class__.__name__)
        emit_log(
            session,
            run_id,
            "Run failed",
            level="error",
            metadata={"error": str(exc)},
        )
        close_stream(run_id)
