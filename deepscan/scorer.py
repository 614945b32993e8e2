"""ScoutScore: weighted composite of the six prospect features.

``compositeScore = round(min(100, 100 * sum(feature_i * weight_i)))`` over the
canonical features, rounding halves up. The score is a pure function of the
feature and weight vectors; the per-user weights come from
:class:`~deepscan.weights.AdaptiveWeightStore`.

Buckets (consumed by outreach and notification collaborators):

- ``hot``: score >= 75
- ``warm``: score >= 50
- ``cold``: everything else
"""
from __future__ import annotations

import logging
import math
from typing import Mapping

from deepscan.schemas import DEFAULT_WEIGHTS, FEATURE_NAMES, FeatureVector
from deepscan.weights import AdaptiveWeightStore

log = logging.getLogger(__name__)

HOT_THRESHOLD = 75
WARM_THRESHOLD = 50


def compute_composite_score(features: FeatureVector, weights: Mapping[str, float]) -> int:
    values = features.as_dict()
    total = 0.0
    for name in FEATURE_NAMES:
        weight = weights.get(name)
        if weight is None:
            weight = DEFAULT_WEIGHTS[name]
        total += values[name] * max(0.0, weight)
    raw = min(100.0, 100.0 * total)
    return max(0, int(math.floor(raw + 0.5)))


def bucket_for(score: int) -> str:
    if score >= HOT_THRESHOLD:
        return "hot"
    if score >= WARM_THRESHOLD:
        return "warm"
    return "cold"


class ScoringEngine:
    def __init__(self, weight_store: AdaptiveWeightStore):
        self.weight_store = weight_store

    def weights_for(self, user_id: str) -> dict[str, float]:
        return self.weight_store.get(user_id)

    def score(self, user_id: str, features: FeatureVector) -> int:
        """Score *features* with the user's current weight vector."""
        return compute_composite_score(features, self.weights_for(user_id))
