"""Run orchestrator: the entry points that create, drive and manage runs.

Creation prices the request, charges the owner and persists the run with
its regions and language states.  Charging and persisting the run happen in
separate transactions; when the second one fails the charge is refunded and
the stored source image is removed before the error reaches the caller.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from image.generator import (
    ASPECT_RATIO_LABELS,
    MAX_DIMENSION_BY_RESOLUTION,
    normalize_source_image,
)
from shared.checkpoints import list_checkpoints
from shared.config import get_settings
from shared.credits import (
    CreditEstimate,
    MAX_LANGUAGES,
    billing_snapshot,
    ensure_affordable,
    estimate,
    load_account,
    release,
    reserve,
)
from shared.errors import (
    InvalidTransition,
    PermissionDenied,
    RunNotFound,
    StorageError,
    ValidationError,
)
from shared.logs import close_stream, emit_log
from shared.models import (
    Asset,
    AssetKind,
    LanguageState,
    LanguageStatus,
    LocalizationRun,
    Region,
    RunCheckpoint,
    RunOutput,
    RunStatus,
)
from shared.pipeline import language_name
from shared.progress import seed_progress, update_progress
from shared.recipes import Recipe
from shared.regions import build_regions, update_region_text
from shared.run_state import RETRYABLE_STATUSES, STATUS_LABELS, update_status
from shared.storage import BlobStore, source_key

from .pipeline import LanguagePipeline, LocalizationServices, build_services, skip_pending_languages

SETTLED_STATUSES = frozenset(
    {RunStatus.DONE, RunStatus.NEEDS_REVIEW, RunStatus.FAILED, RunStatus.CANCELED}
)


@dataclass
class RunRequest:
    """Everything a caller supplies to start a localization run."""

    languages: Sequence[str]
    source_image: bytes
    recipe: Any = Recipe.TRANSLATION
    name: str = "Untitled Project"
    images_per_language: Any = 1
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    regions: Sequence[Mapping[str, Any]] = field(default_factory=list)
    processed_texts: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    review_required: bool = False
    filename: str = "source.jpg"


def normalize_languages(languages: Sequence[str]) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping the requested order."""

    ordered: List[str] = []
    for language in languages or []:
        code = str(language or "").strip()
        if code and code not in ordered:
            ordered.append(code)
    return ordered


def validate_request(request: RunRequest) -> Tuple[List[str], Recipe]:
    languages = normalize_languages(request.languages)
    if not languages:
        raise ValidationError("Target languages are required")
    if len(languages) > MAX_LANGUAGES:
        raise ValidationError(f"At most {MAX_LANGUAGES} target languages are supported")
    if not request.source_image:
        raise ValidationError("Source image is required")
    try:
        recipe = Recipe(request.recipe or Recipe.TRANSLATION)
    except ValueError as exc:
        raise ValidationError(f"Unknown recipe '{request.recipe}'") from exc
    if request.resolution and request.resolution not in MAX_DIMENSION_BY_RESOLUTION:
        raise ValidationError(f"Unsupported resolution '{request.resolution}'")
    if request.aspect_ratio and request.aspect_ratio not in ASPECT_RATIO_LABELS:
        raise ValidationError(f"Unsupported aspect ratio '{request.aspect_ratio}'")
    return languages, recipe


def estimate_request(request: RunRequest) -> CreditEstimate:
    return estimate(len(normalize_languages(request.languages)), request.images_per_language)


def _discard_source(session: Session, storage: BlobStore, asset_id: uuid.UUID, key: str) -> None:
    session.rollback()
    asset = session.get(Asset, asset_id)
    if asset is not None:
        session.delete(asset)
        session.commit()
    storage.delete(key)


def create_run(
    session: Session,
    storage: BlobStore,
    owner_id: uuid.UUID,
    request: RunRequest,
) -> LocalizationRun:
    """Validate, price, charge and persist a new run in ``queued``."""

    settings = get_settings()
    languages, recipe = validate_request(request)
    run_id = uuid.uuid4()
    asset_id = uuid.uuid4()
    regions = build_regions(run_id, asset_id, request.regions, request.processed_texts)

    credit_estimate = estimate(len(languages), request.images_per_language)
    user = load_account(session, owner_id)
    ensure_affordable(user, credit_estimate)
    session.rollback()

    image = normalize_source_image(
        request.source_image,
        max_dimension=settings.max_source_dimension,
        quality=settings.source_jpeg_quality,
    )
    key = source_key(owner_id, asset_id)
    storage.put(key, image.payload, image.mime_type)
    session.add(
        Asset(
            id=asset_id,
            owner_id=owner_id,
            kind=AssetKind.SOURCE,
            storage_key=key,
            public_url=storage.public_url(key),
            filename=request.filename or "source.jpg",
            mime_type=image.mime_type,
            width=image.width,
            height=image.height,
            aspect_ratio=image.aspect_ratio,
            size=len(image.payload),
        )
    )
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        storage.delete(key)
        raise StorageError("Failed to store source image") from exc

    try:
        reservation = reserve(session, owner_id, credit_estimate.credits_estimated)
    except Exception:
        _discard_source(session, storage, asset_id, key)
        raise

    now = datetime.now(UTC)
    run = LocalizationRun(
        id=run_id,
        owner_id=owner_id,
        name=(request.name or "Untitled Project").strip() or "Untitled Project",
        status=RunStatus.QUEUED,
        stage="queued",
        languages=languages,
        progress=seed_progress(
            languages,
            images_planned=credit_estimate.total_images,
            credits_planned=credit_estimate.credits_estimated,
            credits_per_image=credit_estimate.credits_per_image,
        ),
        recipe={
            "mode": recipe.value,
            "image_options": {
                "images_per_language": credit_estimate.images_per_language,
                "aspect_ratio": request.aspect_ratio or image.aspect_ratio,
                "resolution": request.resolution,
            },
            "billing": billing_snapshot(credit_estimate, reservation),
        },
        requires_review=bool(request.review_required),
        source_asset_id=asset_id,
        created_at=now,
        updated_at=now,
    )
    session.add(run)
    session.add_all(regions)
    session.add_all(
        LanguageState(
            id=uuid.uuid4(),
            run_id=run_id,
            language_code=language,
            position=position,
            status=LanguageStatus.PENDING,
            telemetry={},
        )
        for position, language in enumerate(languages)
    )
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        if reservation.charged:
            release(session, reservation)
        _discard_source(session, storage, asset_id, key)
        raise StorageError("Failed to create run") from exc

    emit_log(
        session,
        run_id,
        "Run created",
        metadata={
            "languages": languages,
            "recipe": recipe.value,
            "billing": run.recipe["billing"],
        },
    )
    if reservation.charged:
        emit_log(
            session,
            run_id,
            f"Charged {reservation.amount} credits",
            metadata={
                "credits_charged": reservation.amount,
                "credits_balance_after": reservation.balance_after,
            },
        )
    return run


def run_pipeline(
    session: Session,
    run_id: uuid.UUID,
    *,
    services: Optional[LocalizationServices] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> LocalizationRun:
    owned = services is None
    services = services or build_services()
    try:
        return LanguagePipeline(session, services, session_factory=session_factory).run(run_id)
    finally:
        if owned:
            services.close()


def create_and_run(
    session: Session,
    owner_id: uuid.UUID,
    request: RunRequest,
    *,
    services: Optional[LocalizationServices] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> LocalizationRun:
    """Create a run and process every language before returning."""

    owned = services is None
    services = services or build_services()
    try:
        run = create_run(session, services.storage, owner_id, request)
        return run_pipeline(session, run.id, services=services, session_factory=session_factory)
    finally:
        if owned:
            services.close()


def load_run(
    session: Session, run_id: uuid.UUID, *, owner_id: Optional[uuid.UUID] = None
) -> LocalizationRun:
    run = session.get(LocalizationRun, run_id, populate_existing=True)
    if run is None:
        raise RunNotFound(f"Run {run_id} not found")
    if owner_id is not None and run.owner_id != owner_id:
        raise PermissionDenied("Forbidden")
    return run


def patch_run(
    session: Session,
    run_id: uuid.UUID,
    *,
    owner_id: Optional[uuid.UUID] = None,
    status: Optional[RunStatus] = None,
    stage: Optional[str] = None,
    progress: Optional[Mapping[str, Any]] = None,
    error: Optional[str] = None,
) -> LocalizationRun:
    """Apply a caller's status/progress update through the state machine.

    Status, progress and error are written in one commit, and the transition
    is checked against the run as re-read for that commit, so a rejected
    request leaves the run untouched.
    """

    run = load_run(session, run_id, owner_id=owner_id)
    session.rollback()

    patch = dict(progress or {})
    if status is not None or patch or stage or error is not None:
        run = update_progress(
            session,
            run_id,
            lambda current: current.update(patch),
            stage=stage,
            status=RunStatus(status) if status is not None else None,
            error=error,
        )
        if status is not None and run.status == RunStatus.CANCELED:
            skip_pending_languages(session, run_id)

    if status is not None or progress or stage:
        emit_log(
            session,
            run_id,
            "Run updated",
            metadata={
                "status": run.status.value,
                "stage": run.stage,
                "progress": dict(progress or {}),
            },
        )
    if run.status in SETTLED_STATUSES:
        close_stream(run_id)
    return run


def cancel_run(
    session: Session, run_id: uuid.UUID, *, owner_id: Optional[uuid.UUID] = None
) -> LocalizationRun:
    """Cancel a queued or running run; in-flight work stops at its next check."""

    load_run(session, run_id, owner_id=owner_id)
    session.rollback()
    run = update_status(session, run_id, RunStatus.CANCELED)
    skipped = skip_pending_languages(session, run_id)
    emit_log(
        session,
        run_id,
        "Run canceled",
        level="warning",
        metadata={"languages_skipped": skipped},
    )
    close_stream(run_id)
    return run


def resume_run(
    session: Session, run_id: uuid.UUID, *, owner_id: Optional[uuid.UUID] = None
) -> LocalizationRun:
    """Prepare a run for another pipeline pass.

    Failed and canceled runs go back to ``queued`` with ``retries`` bumped;
    queued, running and needs-review runs are returned as they are, since
    checkpoints make re-processing them safe.
    """

    run = load_run(session, run_id, owner_id=owner_id)
    if run.status == RunStatus.DONE:
        raise InvalidTransition(run.status, RunStatus.QUEUED)
    if run.status not in RETRYABLE_STATUSES and run.status != RunStatus.DRAFT:
        return run

    session.rollback()
    run = update_status(session, run_id, RunStatus.QUEUED, stage="queued", error="")
    run.retries = (run.retries or 0) + 1
    for state in run.language_states:
        if state.status != LanguageStatus.COMPLETED:
            state.status = LanguageStatus.PENDING
            state.notes = ""
    session.commit()
    emit_log(session, run_id, "Run queued for retry", metadata={"retries": run.retries})
    return run


def delete_run(
    session: Session,
    storage: BlobStore,
    run_id: uuid.UUID,
    *,
    owner_id: Optional[uuid.UUID] = None,
) -> None:
    """Remove stored objects first, then every row that belongs to the run."""

    run = load_run(session, run_id, owner_id=owner_id)
    asset_ids = {run.source_asset_id} if run.source_asset_id else set()
    asset_ids.update(output.asset_id for output in run.outputs)
    asset_ids.update(
        checkpoint.output_asset_id for checkpoint in run.checkpoints if checkpoint.output_asset_id
    )
    assets = [session.get(Asset, asset_id) for asset_id in asset_ids]
    assets = [asset for asset in assets if asset is not None]

    for asset in assets:
        storage.delete(asset.storage_key)

    try:
        session.delete(run)
        session.flush()
        for asset in assets:
            session.delete(asset)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError(f"Failed to delete run {run_id}") from exc
    close_stream(run_id)


def list_runs(session: Session, owner_id: uuid.UUID, *, limit: int = 8) -> List[LocalizationRun]:
    limit = min(max(int(limit), 1), 20)
    stmt = (
        select(LocalizationRun)
        .where(LocalizationRun.owner_id == owner_id)
        .order_by(LocalizationRun.created_at.desc())
        .limit(limit)
    )
    return list(session.scalars(stmt))


def edit_region(
    session: Session,
    run_id: uuid.UUID,
    key: str,
    language: str,
    text: str,
    *,
    owner_id: Optional[uuid.UUID] = None,
) -> Region:
    """Store a reviewer's text for one region and language.

    The language's checkpoints no longer match its hash afterwards, so the
    next pipeline pass regenerates exactly that language.
    """

    run = load_run(session, run_id, owner_id=owner_id)
    if language not in (run.languages or []):
        raise ValidationError(f"Language '{language}' is not part of this run")
    region = update_region_text(session, run_id, key, language, text)

    state = (
        session.query(LanguageState)
        .filter_by(run_id=run_id, language_code=language)
        .one_or_none()
    )
    if state is not None and (state.telemetry or {}).get("translation_fallback"):
        telemetry = dict(state.telemetry)
        telemetry["translation_fallback"] = False
        state.telemetry = telemetry
        session.commit()

    emit_log(
        session,
        run_id,
        f"Region {key} edited for {language}",
        metadata={
            "region": key,
            "language": language,
            "overflow_detected": region.overflow_detected,
        },
    )
    return region


def stale_queued_runs(session: Session, older_than_seconds: int) -> List[uuid.UUID]:
    cutoff = datetime.now(UTC) - timedelta(seconds=older_than_seconds)
    stmt = select(LocalizationRun.id).where(
        LocalizationRun.status == RunStatus.QUEUED,
        LocalizationRun.updated_at < cutoff,
    )
    return list(session.scalars(stmt))


def _asset_url(asset: Optional[Asset], storage: Optional[BlobStore]) -> Optional[str]:
    if asset is None:
        return None
    if asset.public_url:
        return asset.public_url
    if storage is None:
        return None
    return storage.resolve_url(asset.storage_key)


def _as_utc(value: Optional[datetime]) -> datetime:
    # SQLite hands back naive timestamps; rows created in-session are aware.
    if value is None:
        return datetime.min.replace(tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def latest_outputs(run: LocalizationRun) -> List[RunOutput]:
    """Newest output per (language, variant), in language then variant order."""

    latest: Dict[Tuple[str, int], RunOutput] = {}
    for output in sorted(run.outputs, key=lambda item: _as_utc(item.created_at)):
        latest[(output.language_code, output.variant_index)] = output
    order = {language: index for index, language in enumerate(run.languages or [])}
    return sorted(
        latest.values(),
        key=lambda item: (order.get(item.language_code, len(order)), item.variant_index),
    )


def checkpoint_snapshot(checkpoint: RunCheckpoint) -> Dict[str, Any]:
    return {
        "id": checkpoint.id,
        "language_code": checkpoint.language_code,
        "variant_index": checkpoint.variant_index,
        "translation_hash": checkpoint.translation_hash,
        "output_asset_id": checkpoint.output_asset_id,
        "created_at": checkpoint.created_at,
    }


def run_snapshot(
    session: Session,
    run: LocalizationRun,
    storage: Optional[BlobStore] = None,
    *,
    include_checkpoints: bool = False,
) -> Dict[str, Any]:
    """Plain-data view of a run for API responses."""

    source = run.source_asset
    snapshot: Dict[str, Any] = {
        "id": run.id,
        "name": run.name,
        "status": run.status,
        "status_label": STATUS_LABELS[run.status],
        "stage": run.stage,
        "languages": list(run.languages or []),
        "progress": dict(run.progress or {}),
        "recipe": dict(run.recipe or {}),
        "requires_review": run.requires_review,
        "error": run.error or None,
        "retries": run.retries,
        "created_at": run.created_at,
        "updated_at": run.updated_at,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "source": None,
        "language_states": [
            {
                "language_code": state.language_code,
                "language_name": language_name(state.language_code),
                "status": state.status,
                "started_at": state.started_at,
                "finished_at": state.finished_at,
                "images_generated": state.images_generated,
                "telemetry": dict(state.telemetry or {}),
                "notes": state.notes or "",
            }
            for state in run.language_states
        ],
        "regions": [
            {
                "key": region.key,
                "source_text": region.source_text,
                "bbox": dict(region.bbox or {}),
                "processed_texts": dict(region.processed_texts or {}),
                "overflow_detected": region.overflow_detected,
            }
            for region in run.regions
        ],
        "outputs": [
            {
                "language_code": output.language_code,
                "variant_index": output.variant_index,
                "asset_id": output.asset_id,
                "url": _asset_url(output.asset, storage),
                "created_at": output.created_at,
            }
            for output in latest_outputs(run)
        ],
    }
    if source is not None:
        snapshot["source"] = {
            "id": source.id,
            "url": _asset_url(source, storage),
            "width": source.width,
            "height": source.height,
            "aspect_ratio": source.aspect_ratio,
            "mime_type": source.mime_type,
        }
    if include_checkpoints:
        snapshot["checkpoints"] = [
            checkpoint_snapshot(checkpoint) for checkpoint in list_checkpoints(session, run.id)
        ]
    return snapshot
