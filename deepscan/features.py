from __future__ import annotations

from deepscan.schemas import EnrichedProspect, FeatureVector, IntentSignals

# (present, absent) values for the presence-rule features
INTENT_STRENGTH = (0.8, 0.3)
BUYING_POWER = (0.9, 0.5)
EMOTIONAL_FIT = (0.7, 0.4)
RELATIONSHIP_CLOSENESS = (0.6, 0.2)

# used when an upstream value is missing
DEFAULT_NEED_URGENCY = 0.5
DEFAULT_DIGITAL_PRESENCE = 0.5


def _pick(condition: bool, values: tuple[float, float]) -> float:
    return values[0] if condition else values[1]


def _unit(value: float | None, default: float) -> float:
    if value is None:
        return default
    return max(0.0, min(1.0, float(value)))


def build_feature_vector(prospect: EnrichedProspect, signals: IntentSignals) -> FeatureVector:
    enrichment = prospect.enrichment
    return FeatureVector(
        intent_strength=_pick(bool(signals.intent_tags), INTENT_STRENGTH),
        buying_power=_pick(enrichment.income_bracket == "high", BUYING_POWER),
        emotional_fit=_pick(bool(signals.pain_points), EMOTIONAL_FIT),
        relationship_closeness=_pick(bool(prospect.entity.email), RELATIONSHIP_CLOSENESS),
        need_urgency=_unit(signals.urgency_score, DEFAULT_NEED_URGENCY),
        digital_presence=_unit(enrichment.digital_footprint, DEFAULT_DIGITAL_PRESENCE),
    )
