from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models import LanguageStatus, RunStatus
from shared.recipes import Recipe


class RegionInput(BaseModel):
    key: str
    source_text: str = ""
    bbox: Dict[str, int] | List[int] = Field(default_factory=lambda: [0, 0, 1000, 1000])


class RunCreateRequest(BaseModel):
    name: str = "Untitled Project"
    languages: List[str]
    recipe: Recipe = Recipe.TRANSLATION
    source_image: str = Field(..., description="Base64 payload or data URL of the source image")
    filename: str = "source.jpg"
    images_per_language: int = 1
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    regions: List[RegionInput] = Field(default_factory=list)
    processed_texts: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    review_required: bool = False

    @field_validator("languages")
    @classmethod
    def languages_must_not_be_empty(cls, value: List[str]) -> List[str]:
        if not [language for language in value if language and language.strip()]:
            raise ValueError("Target languages are required")
        return value


class EstimateRequest(BaseModel):
    languages: List[str] = Field(default_factory=list)
    images_per_language: int = 1


class EstimateResponse(BaseModel):
    total_images: int
    credits_per_image: int
    credits_estimated: int
    images_per_language: int
    language_count: int
    credits_available: int
    affordable: bool


class RunPatchRequest(BaseModel):
    status: RunStatus | None = None
    stage: str | None = None
    progress: Dict[str, Any] | None = None
    error: str | None = None

    @field_validator("progress")
    @classmethod
    def progress_must_be_object(cls, value: Dict[str, Any] | None) -> Dict[str, Any] | None:
        if value is None:
            return value
        if not isinstance(value, dict):
            raise ValueError("Progress updates must be an object")
        return value


class RegionUpdateRequest(BaseModel):
    language: str
    text: str


class SourceAsset(BaseModel):
    id: UUID
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    aspect_ratio: Optional[str] = None
    mime_type: str = "image/jpeg"


class LanguageStateResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    language_code: str
    language_name: str
    status: LanguageStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    images_generated: int = 0
    telemetry: Dict[str, Any] = Field(default_factory=dict)
    notes: str = ""


class RegionResponse(BaseModel):
    key: str
    source_text: str
    bbox: Dict[str, int] = Field(default_factory=dict)
    processed_texts: Dict[str, str] = Field(default_factory=dict)
    overflow_detected: bool = False


class RunOutputResponse(BaseModel):
    language_code: str
    variant_index: int
    asset_id: UUID
    url: Optional[str] = None
    created_at: datetime


class CheckpointResponse(BaseModel):
    id: UUID
    language_code: str
    variant_index: int
    translation_hash: str
    output_asset_id: Optional[UUID] = None
    created_at: datetime


class RunResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: UUID
    name: str
    status: RunStatus
    status_label: str
    stage: str
    languages: List[str]
    progress: Dict[str, Any] = Field(default_factory=dict)
    recipe: Dict[str, Any] = Field(default_factory=dict)
    requires_review: bool = False
    error: Optional[str] = None
    retries: int = 0
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    source: Optional[SourceAsset] = None
    language_states: List[LanguageStateResponse] = Field(default_factory=list)
    regions: List[RegionResponse] = Field(default_factory=list)
    outputs: List[RunOutputResponse] = Field(default_factory=list)
    checkpoints: Optional[List[CheckpointResponse]] = None


class RunListResponse(BaseModel):
    runs: List[RunResponse]
