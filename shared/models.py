"""Database models that capture the localization run lifecycle."""
from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


class RunStatus(str, enum.Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    RUNNING = "running"
    NEEDS_REVIEW = "needs_review"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"


class LanguageStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class AssetKind(str, enum.Enum):
    SOURCE = "source"
    OUTPUT = "output"


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""

    return datetime.now(UTC)


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True)
    email = Column(String(320), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(32), default="user", nullable=False)
    credits_balance = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    tokens = relationship("SessionToken", back_populates="user")


class SessionToken(Base):
    __tablename__ = "session_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    token = Column(String(128), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    user = relationship("User", back_populates="tokens")


class Asset(Base):
    __tablename__ = "assets"

    id = Column(UUID(as_uuid=True), primary_key=True)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    kind = Column(Enum(AssetKind), nullable=False)
    storage_key = Column(String(512), nullable=False)
    public_url = Column(String(1024))
    filename = Column(String(255), nullable=False)
    mime_type = Column(String(64), default="image/jpeg", nullable=False)
    width = Column(Integer)
    height = Column(Integer)
    aspect_ratio = Column(String(8))
    size = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class LocalizationRun(Base):
    __tablename__ = "runs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    name = Column(String(255), default="Untitled Project", nullable=False)
    status = Column(Enum(RunStatus), default=RunStatus.QUEUED, nullable=False)
    stage = Column(String(64), default="queued", nullable=False)
    languages = Column(JSON, default=list, nullable=False)
    progress = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    recipe = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    requires_review = Column(Boolean, default=False, nullable=False)
    source_asset_id = Column(UUID(as_uuid=True), ForeignKey("assets.id"))
    error = Column(Text)
    retries = Column(Integer, default=0, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __mapper_args__ = {"version_id_col": version}

    owner = relationship("User")
    source_asset = relationship("Asset")
    language_states = relationship(
        "LanguageState",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="LanguageState.position",
    )
    regions = relationship(
        "Region",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="Region.position",
    )
    outputs = relationship("RunOutput", back_populates="run", cascade="all, delete-orphan")
    checkpoints = relationship(
        "RunCheckpoint", back_populates="run", cascade="all, delete-orphan"
    )
    logs = relationship("RunLog", back_populates="run", cascade="all, delete-orphan")


class LanguageState(Base):
    __tablename__ = "language_states"

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("runs.id"), nullable=False)
    language_code = Column(String(16), nullable=False)
    position = Column(Integer, default=0, nullable=False)
    status = Column(Enum(LanguageStatus), default=LanguageStatus.PENDING, nullable=False)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    telemetry = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    images_generated = Column(Integer, default=0, nullable=False)
    notes = Column(Text, default="")

    run = relationship("LocalizationRun", back_populates="language_states")


class Region(Base):
    __tablename__ = "regions"

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("runs.id"), nullable=False)
    asset_id = Column(UUID(as_uuid=True), ForeignKey("assets.id"), nullable=False)
    key = Column(String(128), nullable=False)
    position = Column(Integer, default=0, nullable=False)
    source_text = Column(Text, default="", nullable=False)
    bbox = Column(JSON, default=dict, nullable=False)
    processed_texts = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    overflow_detected = Column(Boolean, default=False, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    run = relationship("LocalizationRun", back_populates="regions")


class RunOutput(Base):
    __tablename__ = "run_outputs"
    __table_args__ = (Index("ix_run_outputs_key", "run_id", "language_code", "variant_index"),)

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("runs.id"), nullable=False)
    language_code = Column(String(16), nullable=False)
    variant_index = Column(Integer, default=0, nullable=False)
    asset_id = Column(UUID(as_uuid=True), ForeignKey("assets.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    run = relationship("LocalizationRun", back_populates="outputs")
    asset = relationship("Asset")


class RunCheckpoint(Base):
    __tablename__ = "run_checkpoints"
    __table_args__ = (
        Index("ix_run_checkpoints_key", "run_id", "language_code", "variant_index"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("runs.id"), nullable=False)
    language_code = Column(String(16), nullable=False)
    variant_index = Column(Integer, default=0, nullable=False)
    translation_hash = Column(String(64), nullable=False)
    output_asset_id = Column(UUID(as_uuid=True), ForeignKey("assets.id"))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    run = relationship("LocalizationRun", back_populates="checkpoints")


class RunLog(Base):
    __tablename__ = "run_logs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("runs.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    level = Column(String(16), default="info", nullable=False)
    message = Column(Text, nullable=False)
    data = Column("metadata", JSON, default=dict, nullable=False)

    run = relationship("LocalizationRun", back_populates="logs")
