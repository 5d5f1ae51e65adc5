"""Region store: extracted text blocks and their per-language texts."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import StorageError, ValidationError
from .models import Region
from .progress import MAX_ATTEMPTS

# Translated text longer than this multiple of the source needs human review.
OVERFLOW_RATIO = 1.5
BBOX_KEYS = ("ymin", "xmin", "ymax", "xmax")


def text_overflows(source_text: str, text: str) -> bool:
    """Length is counted in code points; an empty source never overflows."""

    source_length = len(source_text or "")
    if source_length == 0:
        return False
    return len(text or "") > source_length * OVERFLOW_RATIO


def compute_overflow(source_text: str, processed_texts: Mapping[str, str]) -> bool:
    return any(text_overflows(source_text, text) for text in processed_texts.values())


def normalize_bbox(raw: Any) -> Dict[str, int]:
    """Accept ``{ymin, xmin, ymax, xmax}`` or ``[ymin, xmin, ymax, xmax]`` on a 0-1000 scale."""

    if isinstance(raw, Mapping):
        values = [raw.get(key, 0) for key in BBOX_KEYS]
    elif isinstance(raw, (list, tuple)) and len(raw) == 4:
        values = list(raw)
    else:
        raise ValidationError("Region bounding box must have four coordinates")
    try:
        coords = [min(max(int(value), 0), 1000) for value in values]
    except (TypeError, ValueError) as exc:
        raise ValidationError("Region bounding box coordinates must be integers") from exc
    return dict(zip(BBOX_KEYS, coords))


def build_regions(
    run_id: uuid.UUID,
    asset_id: uuid.UUID,
    blocks: Iterable[Mapping[str, Any]],
    processed_texts: Optional[Mapping[str, Mapping[str, str]]] = None,
) -> List[Region]:
    """Create region rows in extraction order; keys must be unique."""

    processed_texts = processed_texts or {}
    regions: List[Region] = []
    seen: set[str] = set()
    for position, block in enumerate(blocks):
        key = str(block.get("key") or "").strip()
        if not key:
            raise ValidationError("Every region needs a key")
        if key in seen:
            raise ValidationError(f"Duplicate region key '{key}'")
        seen.add(key)
        source_text = str(block.get("source_text") or "")
        texts = {lang: str(text) for lang, text in (processed_texts.get(key) or {}).items()}
        regions.append(
            Region(
                id=uuid.uuid4(),
                run_id=run_id,
                asset_id=asset_id,
                key=key,
                position=position,
                source_text=source_text,
                bbox=normalize_bbox(block.get("bbox")),
                processed_texts=texts,
                overflow_detected=compute_overflow(source_text, texts),
            )
        )
    return regions


def load_regions(session: Session, run_id: uuid.UUID) -> List[Region]:
    stmt = select(Region).where(Region.run_id == run_id).order_by(Region.position)
    return list(session.scalars(stmt))


def has_translation(regions: Iterable[Region], language: str) -> bool:
    """True when every region already carries non-empty text for ``language``."""

    regions = list(regions)
    if not regions:
        return False
    return all((region.processed_texts or {}).get(language) for region in regions)


def set_language_texts(
    session: Session,
    regions: Iterable[Region],
    language: str,
    texts: Mapping[str, str],
) -> bool:
    """Write ``texts`` (region key -> text) for one language and commit.

    Regions without an entry in ``texts`` keep their source text.  Returns
    whether any region of this language overflows.  Each attempt re-reads the
    regions, so a concurrent write for another language is kept.
    """

    region_ids = [region.id for region in regions]
    for _ in range(MAX_ATTEMPTS):
        language_overflows = False
        for region_id in region_ids:
            region = session.get(Region, region_id, populate_existing=True)
            if region is None:
                continue
            text = texts.get(region.key, region.source_text or "")
            updated = dict(region.processed_texts or {})
            updated[language] = text
            region.processed_texts = updated
            region.overflow_detected = compute_overflow(region.source_text, updated)
            if text_overflows(region.source_text, text):
                language_overflows = True
        try:
            session.commit()
        except StaleDataError:
            session.rollback()
            continue
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Failed to persist translations for {language}") from exc
        return language_overflows
    raise StorageError(f"Regions kept changing while saving {language}; giving up")


def update_region_text(
    session: Session, run_id: uuid.UUID, key: str, language: str, text: str
) -> Region:
    """Manual edit of one region's text; last writer wins."""

    region = session.scalars(
        select(Region).where(Region.run_id == run_id, Region.key == key)
    ).first()
    if region is None:
        raise ValidationError(f"Unknown region '{key}'")
    set_language_texts(session, [region], language, {key: text})
    return region
