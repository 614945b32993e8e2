"""Pydantic value types for the scan pipeline and request/response schemas for the API."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deepscan.models import Outcome, SourceType, Stage

FEATURE_NAMES: tuple[str, ...] = (
    "intent_strength",
    "buying_power",
    "emotional_fit",
    "relationship_closeness",
    "need_urgency",
    "digital_presence",
)

# camelCase spellings used by clients ("buyingPower") -> stored feature name
FEATURE_ALIASES: dict[str, str] = {to_camel(name): name for name in FEATURE_NAMES}


def canonical_feature(name: str) -> str | None:
    """Return the stored feature name for *name* (snake_case or camelCase), or None."""
    if name in FEATURE_NAMES:
        return name
    return FEATURE_ALIASES.get(name)

DEFAULT_WEIGHTS: dict[str, float] = {
    "intent_strength": 0.25,
    "buying_power": 0.20,
    "emotional_fit": 0.15,
    "relationship_closeness": 0.15,
    "need_urgency": 0.15,
    "digital_presence": 0.10,
}

Unit = Annotated[float, Field(ge=0.0, le=1.0)]


# ---------------------------------------------------------------------------
# Pipeline value types (immutable)
# ---------------------------------------------------------------------------


class ExtractedEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_text: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    source_tag: str = ""

    @property
    def has_contact(self) -> bool:
        return bool(self.email or self.phone)


class SocialSignals(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_online: bool
    engagement_level: Unit


class Enrichment(BaseModel):
    model_config = ConfigDict(frozen=True)

    likely_occupation: str
    location: str
    income_bracket: str
    digital_footprint: Unit
    social_signals: SocialSignals


class EnrichedProspect(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity: ExtractedEntity
    enrichment: Enrichment


class IntentSignals(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent_tags: frozenset[str] = frozenset()
    urgency_score: Unit
    pain_points: frozenset[str] = frozenset()
    buying_indicators: frozenset[str] = frozenset()


class FeatureVector(BaseModel):
    """The six scoring features, each in [0, 1]. Every field is required."""
    model_config = ConfigDict(frozen=True)

    intent_strength: Unit
    buying_power: Unit
    emotional_fit: Unit
    relationship_closeness: Unit
    need_urgency: Unit
    digital_presence: Unit

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in FEATURE_NAMES}


class ProspectSnapshot(BaseModel):
    entity: ExtractedEntity
    enrichment: Enrichment
    signals: IntentSignals


class ScoredProspect(BaseModel):
    """A scored prospect before it is written to the result store."""
    position: int
    snapshot: ProspectSnapshot
    features: FeatureVector
    weights: dict[str, float]
    composite_score: int = Field(ge=0, le=100)
    bucket: str


# ---------------------------------------------------------------------------
# API request/response schemas
# ---------------------------------------------------------------------------


class SessionCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    source_type: SourceType
    raw_payload: str


class SessionCreated(BaseModel):
    session_id: str
    stage: Stage


class SessionStatusOut(BaseModel):
    session_id: str
    stage: Stage
    progress_percent: int
    status_message: str
    error_message: str | None = None


class SessionOut(SessionStatusOut):
    owner_user_id: str
    source_type: SourceType
    total_prospects: int
    hot_leads: int
    warm_leads: int
    cold_leads: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class ScoredResultOut(BaseModel):
    id: int
    session_id: str
    position: int
    composite_score: int
    bucket: str
    prospect: dict[str, Any]
    features: dict[str, float]
    weights: dict[str, float]
    created_at: datetime


class ScanEventOut(BaseModel):
    id: int
    event_type: str
    stage: str
    progress: int
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class OutcomeIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    feature: str
    outcome: str
    feature_value: float


class WeightsOut(BaseModel):
    user_id: str
    weights: dict[str, float]


class WeightUpdateOut(BaseModel):
    feature: str
    outcome: Outcome
    feature_value: float
    applied_delta: float
    weight_before: float
    weight_after: float
    created_at: datetime


class ReconcileIn(BaseModel):
    timeout_minutes: float | None = Field(default=None, gt=0)


class ReconcileOut(BaseModel):
    reconciled: int
