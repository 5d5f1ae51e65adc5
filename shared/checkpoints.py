"""Checkpoint and idempotency layer.

A checkpoint proves that a (run, language, variant) output was generated from
one specific version of the language's translated text.  Rows are append-only;
reuse decisions read the newest row for a key.
"""
from __future__ import annotations

import hashlib
import json
import uuid
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StorageError
from .models import Region, RunCheckpoint


def region_text(region: Region, language: str) -> str:
    """Current text of ``region`` for ``language``, falling back to the source."""

    texts = region.processed_texts or {}
    value = texts.get(language)
    if value is None:
        return region.source_text or ""
    return value


def translation_hash(regions: Sequence[Region], language: str) -> str:
    """SHA-256 over the region texts as a JSON array, in region order."""

    ordered = sorted(regions, key=lambda region: region.position)
    return hash_texts(region_text(region, language) for region in ordered)


def hash_texts(texts: Iterable[str]) -> str:
    payload = json.dumps(list(texts), ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def latest_checkpoint(
    session: Session, run_id: uuid.UUID, language: str, variant_index: int
) -> Optional[RunCheckpoint]:
    stmt = (
        select(RunCheckpoint)
        .where(
            RunCheckpoint.run_id == run_id,
            RunCheckpoint.language_code == language,
            RunCheckpoint.variant_index == variant_index,
        )
        .order_by(RunCheckpoint.created_at.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def list_checkpoints(session: Session, run_id: uuid.UUID) -> List[RunCheckpoint]:
    stmt = (
        select(RunCheckpoint)
        .where(RunCheckpoint.run_id == run_id)
        .order_by(RunCheckpoint.created_at.desc())
    )
    return list(session.scalars(stmt))


def reusable_checkpoint(
    session: Session,
    run_id: uuid.UUID,
    language: str,
    variant_index: int,
    current_hash: str,
) -> Optional[RunCheckpoint]:
    """Newest checkpoint for the key when it matches ``current_hash``.

    A mismatch means the translation was edited after generation; the stale
    checkpoint is ignored and ``None`` is returned.
    """

    checkpoint = latest_checkpoint(session, run_id, language, variant_index)
    if checkpoint is None or checkpoint.translation_hash != current_hash:
        return None
    return checkpoint


def should_regenerate(
    session: Session,
    run_id: uuid.UUID,
    language: str,
    variant_index: int,
    *,
    regions: Optional[Sequence[Region]] = None,
    current_hash: Optional[str] = None,
) -> bool:
    if current_hash is None:
        if regions is None:
            regions = list(
                session.scalars(
                    select(Region).where(Region.run_id == run_id).order_by(Region.position)
                )
            )
        current_hash = translation_hash(regions, language)
    return reusable_checkpoint(session, run_id, language, variant_index, current_hash) is None


def record_checkpoint(
    session: Session,
    run_id: uuid.UUID,
    language: str,
    variant_index: int,
    hash_value: str,
    output_asset_id: Optional[uuid.UUID],
) -> RunCheckpoint:
    """Append a checkpoint row and commit it.

    The commit happens here so a later :func:`should_regenerate` in the same
    run always observes the write.
    """

    checkpoint = RunCheckpoint(
        id=uuid.uuid4(),
        run_id=run_id,
        language_code=language,
        variant_index=variant_index,
        translation_hash=hash_value,
        output_asset_id=output_asset_id,
    )
    session.add(checkpoint)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError(f"Failed to record checkpoint for {language}#{variant_index}") from exc
    return checkpoint
