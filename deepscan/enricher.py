from __future__ import annotations

import hashlib
import logging

from deepscan.schemas import EnrichedProspect, Enrichment, ExtractedEntity, SocialSignals

log = logging.getLogger(__name__)

DEFAULT_OCCUPATION = "Professional"
DEFAULT_LOCATION = "Unknown"

# ---------------------------------------------------------------------------
# Keyword rules (first match wins, evaluated against lowercased raw text)
# ---------------------------------------------------------------------------

_OCCUPATION_RULES: list[tuple[tuple[str, ...], str]] = [
    (("ofw", "abroad", "overseas", "seafarer", "seaman", "domestic helper"), "OFW"),
    (("entrepreneur", "business", "negosyo", "owner"), "Business Owner"),
    (("manager", "supervisor", "team lead"), "Manager"),
]

_GAZETTEER: list[tuple[tuple[str, ...], str]] = [
    (("dubai",), "Dubai, UAE"),
    (("abu dhabi",), "Abu Dhabi, UAE"),
    (("singapore",), "Singapore"),
    (("hong kong",), "Hong Kong"),
    (("riyadh",), "Riyadh, Saudi Arabia"),
    (("doha", "qatar"), "Doha, Qatar"),
    (("manila",), "Manila, Philippines"),
    (("cebu",), "Cebu, Philippines"),
    (("davao",), "Davao, Philippines"),
]

_OVERSEAS_LOCATIONS = {
    "Dubai, UAE", "Abu Dhabi, UAE", "Singapore", "Hong Kong",
    "Riyadh, Saudi Arabia", "Doha, Qatar",
}

_SOCIAL_MARKERS = (
    "facebook", "fb.com", "instagram", "linkedin", "tiktok", "twitter",
    "messenger", "viber", "whatsapp", "telegram", "youtube",
)


def _first_match(text: str, rules: list[tuple[tuple[str, ...], str]], default: str) -> str:
    for keywords, label in rules:
        if any(k in text for k in keywords):
            return label
    return default


def infer_occupation(text: str) -> str:
    return _first_match(text.lower(), _OCCUPATION_RULES, DEFAULT_OCCUPATION)


def infer_location(text: str) -> str:
    return _first_match(text.lower(), _GAZETTEER, DEFAULT_LOCATION)


def infer_income_bracket(occupation: str, location: str) -> str:
    """``high`` when occupation or location point to overseas work."""
    if occupation == "OFW" or location in _OVERSEAS_LOCATIONS:
        return "high"
    return "medium"


# ---------------------------------------------------------------------------
# Deterministic online-presence heuristics
# ---------------------------------------------------------------------------


def _stable_fraction(text: str, salt: str) -> float:
    """Map *text* to a stable value in [0, 1) that is identical across processes."""
    digest = hashlib.blake2b(f"{salt}:{text}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") / 2**64


def _presence_evidence(entity: ExtractedEntity) -> int:
    text = entity.raw_text.lower()
    evidence = sum(1 for marker in _SOCIAL_MARKERS if marker in text)
    if "@" in text and not entity.email:
        evidence += 1  # social handle
    if entity.email:
        evidence += 1
    if entity.phone:
        evidence += 1
    return evidence


def digital_footprint(entity: ExtractedEntity) -> float:
    """Half evidence count (saturating at 4 signals), half a stable content hash."""
    evidence = min(_presence_evidence(entity), 4) / 4
    value = 0.5 * evidence + 0.5 * _stable_fraction(entity.raw_text.strip().lower(), "footprint")
    return round(min(1.0, value), 4)


def social_signals(entity: ExtractedEntity, footprint: float) -> SocialSignals:
    engagement = 0.6 * footprint + 0.4 * _stable_fraction(entity.raw_text.strip().lower(), "engagement")
    return SocialSignals(
        active_online=footprint >= 0.3,
        engagement_level=round(min(1.0, engagement), 4),
    )


def enrich(entity: ExtractedEntity) -> EnrichedProspect:
    """Attach heuristic demographic and behavioral attributes to *entity*."""
    occupation = infer_occupation(entity.raw_text)
    location = infer_location(entity.raw_text)
    if occupation == DEFAULT_OCCUPATION and location == DEFAULT_LOCATION:
        log.debug("No enrichment keywords matched for %r, using defaults", entity.raw_text[:60])
    footprint = digital_footprint(entity)
    return EnrichedProspect(
        entity=entity,
        enrichment=Enrichment(
            likely_occupation=occupation,
            location=location,
            income_bracket=infer_income_bracket(occupation, location),
            digital_footprint=footprint,
            social_signals=social_signals(entity, footprint),
        ),
    )
