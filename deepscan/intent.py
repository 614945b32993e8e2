"""Intent, urgency and pain-point signals derived from a prospect's raw text.

Urgency score
-------------
Every urgency keyword, intent tag and pain point found in the text counts as
one piece of evidence ``n``. The score is ``n / (n + 2)``: zero with no
evidence, 0.5 at two hits, approaching 1 as evidence accumulates. It is
bounded, deterministic and strictly increasing in ``n``.
"""
from __future__ import annotations

import logging

from deepscan.ingestion import PHONE_RE
from deepscan.schemas import IntentSignals

log = logging.getLogger(__name__)

URGENCY_SATURATION = 2

_INTENT_RULES: dict[str, tuple[str, ...]] = {
    "seeking_income": ("extra income", "side hustle", "sideline", "raket", "passive income"),
    "business_interest": ("business", "opportunity", "negosyo", "franchise", "invest"),
    "seeking_help": ("help", "need", "kailangan", "looking for"),
}

_PAIN_POINT_RULES: dict[str, tuple[str, ...]] = {
    "financial_pressure": ("extra income", "more money", "bills", "debt", "utang", "gastos"),
    "time_constrained": ("time", "busy", "no time", "walang oras"),
    "career_stagnation": ("stuck", "no promotion", "resign", "burnout"),
}

_INTEREST_WORDS = ("interested", "gusto", "interesado", "how to join", "pm me", "send details")
_CONTACT_WORDS = ("contact", "call me", "text me", "message me")

_URGENCY_WORDS = (
    "asap", "urgent", "urgently", "now", "today", "immediately", "agad",
    "soon", "this week", "deadline", "kailangan",
)


def _tags(text: str, rules: dict[str, tuple[str, ...]]) -> frozenset[str]:
    return frozenset(tag for tag, words in rules.items() if any(w in text for w in words))


def buying_indicators(text: str, has_contact: bool = False) -> frozenset[str]:
    indicators: set[str] = set()
    if any(w in text for w in _INTEREST_WORDS):
        indicators.add("expressed_interest")
    if has_contact or any(w in text for w in _CONTACT_WORDS) or PHONE_RE.search(text) or "@" in text:
        indicators.add("provided_contact")
    return frozenset(indicators)


def urgency_score(evidence: int) -> float:
    if evidence <= 0:
        return 0.0
    return round(evidence / (evidence + URGENCY_SATURATION), 4)


def analyze(raw_text: str, *, has_contact: bool = False) -> IntentSignals:
    text = (raw_text or "").lower()
    intent_tags = _tags(text, _INTENT_RULES)
    pain_points = _tags(text, _PAIN_POINT_RULES)
    urgency_hits = sum(1 for w in _URGENCY_WORDS if w in text)
    evidence = urgency_hits + len(intent_tags) + len(pain_points)
    return IntentSignals(
        intent_tags=intent_tags,
        urgency_score=urgency_score(evidence),
        pain_points=pain_points,
        buying_indicators=buying_indicators(text, has_contact),
    )
