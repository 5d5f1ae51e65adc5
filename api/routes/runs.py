from __future__ import annotations

import base64
import binascii
import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from image.generator import decode_data_url
from localize import orchestrator
from localize.orchestrator import RunRequest
from shared.credits import effective_balance, estimate, load_account
from shared.errors import ValidationError
from shared.models import RunStatus, User
from shared.storage import BlobStore

from ..dependencies import get_blob_store, get_current_user, get_db
from ..schemas.runs import (
    EstimateRequest,
    EstimateResponse,
    RegionResponse,
    RegionUpdateRequest,
    RunCreateRequest,
    RunListResponse,
    RunPatchRequest,
    RunResponse,
)
from ..services.pipeline import enqueue_run

router = APIRouter(prefix="/runs", tags=["runs"])

ENQUEUEABLE_STATUSES = {RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.NEEDS_REVIEW}


def decode_source_image(value: str) -> bytes:
    value = (value or "").strip()
    if not value:
        raise ValidationError("Source image is required")
    if value.startswith("data:"):
        payload, _ = decode_data_url(value)
        return payload
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Invalid image data") from exc


@router.get("", response_model=RunListResponse)
async def list_runs(
    limit: int = Query(8, ge=1, le=20),
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> RunListResponse:
    def load(sync_session: Session) -> list[dict]:
        runs = orchestrator.list_runs(sync_session, current_user.id, limit=limit)
        return [
            orchestrator.run_snapshot(sync_session, run, storage, include_checkpoints=True)
            for run in runs
        ]

    snapshots = await session.run_sync(load)
    return RunListResponse(runs=[RunResponse.model_validate(item) for item in snapshots])


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_run(
    payload: EstimateRequest,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> EstimateResponse:
    def price(sync_session: Session) -> EstimateResponse:
        credit_estimate = estimate(
            len(orchestrator.normalize_languages(payload.languages)),
            payload.images_per_language,
        )
        account = load_account(sync_session, current_user.id)
        available = effective_balance(account.credits_balance, account.role)
        return EstimateResponse(
            **credit_estimate.to_dict(),
            credits_available=available,
            affordable=available >= credit_estimate.credits_estimated,
        )

    return await session.run_sync(price)


@router.post("", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def create_run(
    payload: RunCreateRequest,
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> RunResponse:
    request = RunRequest(
        languages=payload.languages,
        source_image=decode_source_image(payload.source_image),
        recipe=payload.recipe,
        name=payload.name,
        images_per_language=payload.images_per_language,
        aspect_ratio=payload.aspect_ratio,
        resolution=payload.resolution,
        regions=[region.model_dump() for region in payload.regions],
        processed_texts=payload.processed_texts,
        review_required=payload.review_required,
        filename=payload.filename,
    )

    def create(sync_session: Session) -> dict:
        run = orchestrator.create_run(sync_session, storage, current_user.id, request)
        return orchestrator.run_snapshot(sync_session, run, storage)

    snapshot = await session.run_sync(create)
    enqueue_run(snapshot["id"])
    return RunResponse.model_validate(snapshot)


@router.get("/{run_id}", response_model=RunResponse)
async def get_run_detail(
    run_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> RunResponse:
    def load(sync_session: Session) -> dict:
        run = orchestrator.load_run(sync_session, run_id, owner_id=current_user.id)
        return orchestrator.run_snapshot(sync_session, run, storage, include_checkpoints=True)

    return RunResponse.model_validate(await session.run_sync(load))


@router.patch("/{run_id}", response_model=RunResponse)
async def patch_run(
    run_id: uuid.UUID,
    payload: RunPatchRequest,
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> RunResponse:
    def update(sync_session: Session) -> dict:
        run = orchestrator.patch_run(
            sync_session,
            run_id,
            owner_id=current_user.id,
            status=payload.status,
            stage=payload.stage,
            progress=payload.progress,
            error=payload.error,
        )
        return orchestrator.run_snapshot(sync_session, run, storage)

    return RunResponse.model_validate(await session.run_sync(update))


@router.delete("/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_run(
    run_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> Response:
    def remove(sync_session: Session) -> None:
        orchestrator.delete_run(sync_session, storage, run_id, owner_id=current_user.id)

    await session.run_sync(remove)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{run_id}/resume", response_model=RunResponse)
async def resume_run(
    run_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> RunResponse:
    def resume(sync_session: Session) -> dict:
        run = orchestrator.resume_run(sync_session, run_id, owner_id=current_user.id)
        return orchestrator.run_snapshot(sync_session, run, storage)

    snapshot = await session.run_sync(resume)
    if RunStatus(snapshot["status"]) in ENQUEUEABLE_STATUSES:
        enqueue_run(run_id)
    return RunResponse.model_validate(snapshot)


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    storage: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
) -> RunResponse:
    def cancel(sync_session: Session) -> dict:
        run = orchestrator.cancel_run(sync_session, run_id, owner_id=current_user.id)
        return orchestrator.run_snapshot(sync_session, run, storage)

    return RunResponse.model_validate(await session.run_sync(cancel))


@router.patch("/{run_id}/regions/{key}", response_model=RegionResponse)
async def update_region(
    run_id: uuid.UUID,
    key: str,
    payload: RegionUpdateRequest,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RegionResponse:
    def edit(sync_session: Session) -> RegionResponse:
        region = orchestrator.edit_region(
            sync_session,
            run_id,
            key,
            payload.language,
            payload.text,
            owner_id=current_user.id,
        )
        return RegionResponse(
            key=region.key,
            source_text=region.source_text,
            bbox=dict(region.bbox or {}),
            processed_texts=dict(region.processed_texts or {}),
            overflow_detected=region.overflow_detected,
        )

    return await session.run_sync(edit)
