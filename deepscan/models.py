from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    DateTime, Enum as SAEnum, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from deepscan.utils import utcnow


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SourceType(StrEnum):
    PASTED_TEXT = "pasted_text"
    CSV = "csv"
    IMAGE_OCR = "image_ocr"
    SOCIAL_EXPORT = "social_export"


class Outcome(StrEnum):
    CLOSED = "closed"
    IGNORED = "ignored"


class IllegalStageTransition(ValueError):
    """A stage write that the session state machine does not allow."""


class Stage(StrEnum):
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    PARSING = "parsing"
    ENRICHING = "enriching"
    DEEP_INTEL = "deep_intel"
    SCORING = "scoring"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.FAILED)

    @property
    def next_stage(self) -> Stage | None:
        """The stage that follows this one on a successful run."""
        idx = RUN_ORDER.index(self) if self in RUN_ORDER else -1
        if idx < 0 or idx + 1 >= len(RUN_ORDER):
            return None
        return RUN_ORDER[idx + 1]

    def can_transition_to(self, target: Stage) -> bool:
        return target in _TRANSITIONS[self]


RUN_ORDER: tuple[Stage, ...] = (
    Stage.IDLE, Stage.PREPROCESSING, Stage.PARSING, Stage.ENRICHING,
    Stage.DEEP_INTEL, Stage.SCORING, Stage.COMPLETE,
)

_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    stage: frozenset({RUN_ORDER[i + 1], Stage.FAILED})
    for i, stage in enumerate(RUN_ORDER[:-1])
}
_TRANSITIONS[Stage.COMPLETE] = frozenset()
_TRANSITIONS[Stage.FAILED] = frozenset()

# progressPercent written on entering each stage
STAGE_PROGRESS: dict[Stage, int] = {
    Stage.IDLE: 0,
    Stage.PREPROCESSING: 10,
    Stage.PARSING: 25,
    Stage.ENRICHING: 45,
    Stage.DEEP_INTEL: 65,
    Stage.SCORING: 85,
    Stage.COMPLETE: 100,
    Stage.FAILED: 0,
}


def _enum_column(enum_cls: type[StrEnum], length: int = 30) -> SAEnum:
    return SAEnum(
        enum_cls, native_enum=False, length=length,
        values_callable=lambda members: [m.value for m in members],
    )


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Scan sessions
# ---------------------------------------------------------------------------


class ScanSession(Base):
    __tablename__ = "scan_sessions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    owner_user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_type: Mapped[SourceType] = mapped_column(_enum_column(SourceType), nullable=False)
    raw_payload: Mapped[str] = mapped_column(Text, default="")
    stage: Mapped[Stage] = mapped_column(_enum_column(Stage), nullable=False, default=Stage.IDLE, index=True)
    progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    status_message: Mapped[str] = mapped_column(String(300), default="")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_prospects: Mapped[int] = mapped_column(Integer, default=0)
    hot_leads: Mapped[int] = mapped_column(Integer, default=0)
    warm_leads: Mapped[int] = mapped_column(Integer, default=0)
    cold_leads: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    entities: Mapped[list[ScanEntity]] = relationship(
        "ScanEntity", back_populates="session", cascade="all, delete-orphan",
        order_by="ScanEntity.position",
    )
    results: Mapped[list[ScanResult]] = relationship(
        "ScanResult", back_populates="session", cascade="all, delete-orphan",
        order_by="ScanResult.position",
    )
    events: Mapped[list[ScanEvent]] = relationship(
        "ScanEvent", back_populates="session", cascade="all, delete-orphan",
        order_by="ScanEvent.id",
    )

    @validates("stage")
    def _validate_stage(self, key: str, value: Stage | str) -> Stage:
        target = Stage(value)
        current = self.stage
        if current is None:
            if target is not Stage.IDLE:
                raise IllegalStageTransition(f"New sessions start in 'idle', not {target.value!r}")
        elif target != current and not current.can_transition_to(target):
            raise IllegalStageTransition(f"Cannot move session from {current.value!r} to {target.value!r}")
        return target

    @validates("progress_percent")
    def _validate_progress(self, key: str, value: int) -> int:
        value = int(value)
        if not 0 <= value <= 100:
            raise ValueError(f"progress_percent out of range: {value}")
        current = self.progress_percent
        if current is not None and value < current and self.stage is not Stage.FAILED:
            raise ValueError(f"progress_percent may not decrease ({current} -> {value})")
        return value

    def advance(self, stage: Stage, message: str) -> None:
        """Enter *stage*, writing its fixed progress value and a status message."""
        self.stage = stage
        self.progress_percent = STAGE_PROGRESS[stage]
        self.status_message = message[:300]
        self.updated_at = utcnow()
        if stage is Stage.COMPLETE:
            self.completed_at = self.updated_at

    def fail(self, error_message: str) -> None:
        self.stage = Stage.FAILED
        self.progress_percent = 0
        self.error_message = error_message
        self.status_message = "Scan failed"
        self.updated_at = utcnow()
        self.completed_at = self.updated_at


class ScanEntity(Base):
    __tablename__ = "scan_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(32), ForeignKey("scan_sessions.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    raw_text: Mapped[str] = mapped_column(Text, default="")
    name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_tag: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    session: Mapped[ScanSession] = relationship("ScanSession", back_populates="entities")


class ScanResult(Base):
    __tablename__ = "scan_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(32), ForeignKey("scan_sessions.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    composite_score: Mapped[int] = mapped_column(Integer, nullable=False)
    bucket: Mapped[str] = mapped_column(String(10), default="cold")
    prospect_json: Mapped[str] = mapped_column(Text, default="{}")
    features_json: Mapped[str] = mapped_column(Text, default="{}")
    weights_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    session: Mapped[ScanSession] = relationship("ScanSession", back_populates="results")


class ScanEvent(Base):
    __tablename__ = "scan_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(32), ForeignKey("scan_sessions.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(30), default="progress")
    stage: Mapped[str] = mapped_column(String(30), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str] = mapped_column(Text, default="")
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    session: Mapped[ScanSession] = relationship("ScanSession", back_populates="events")


# ---------------------------------------------------------------------------
# Adaptive weights
# ---------------------------------------------------------------------------


class UserScoringWeight(Base):
    __tablename__ = "user_scoring_weights"
    __table_args__ = (UniqueConstraint("user_id", "feature", name="uq_user_feature"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    feature: Mapped[str] = mapped_column(String(50), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class WeightUpdateEvent(Base):
    __tablename__ = "weight_update_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    feature: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[Outcome] = mapped_column(_enum_column(Outcome, 10), nullable=False)
    feature_value: Mapped[float] = mapped_column(Float, nullable=False)
    applied_delta: Mapped[float] = mapped_column(Float, nullable=False)
    weight_before: Mapped[float] = mapped_column(Float, nullable=False)
    weight_after: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
