"""Tests for keyword enrichment and the deterministic online-presence heuristics."""
from __future__ import annotations

import pytest

from deepscan.enricher import (
    DEFAULT_LOCATION, DEFAULT_OCCUPATION, digital_footprint, enrich,
    infer_income_bracket, infer_location, infer_occupation, social_signals,
)
from deepscan.schemas import ExtractedEntity


def _entity(raw_text: str, **kwargs) -> ExtractedEntity:
    return ExtractedEntity(raw_text=raw_text, **kwargs)


class TestKeywordRules:
    def test_ofw_in_dubai(self):
        prospect = enrich(_entity("Juan Dela Cruz ofw dubai juan@x.com", name="Juan Dela Cruz", email="juan@x.com"))
        assert prospect.enrichment.likely_occupation == "OFW"
        assert prospect.enrichment.location == "Dubai, UAE"
        assert prospect.enrichment.income_bracket == "high"

    def test_defaults_when_nothing_matches(self):
        enrichment = enrich(_entity("Ana Reyes", name="Ana Reyes")).enrichment
        assert enrichment.likely_occupation == DEFAULT_OCCUPATION == "Professional"
        assert enrichment.location == DEFAULT_LOCATION == "Unknown"
        assert enrichment.income_bracket == "medium"

    @pytest.mark.parametrize("text,expected", [
        ("works abroad as seafarer", "OFW"),
        ("small negosyo owner in Cebu", "Business Owner"),
        ("Store Manager at SM", "Manager"),
        ("nurse", "Professional"),
    ])
    def test_occupation(self, text, expected):
        assert infer_occupation(text) == expected

    def test_first_matching_rule_wins(self):
        # "ofw" is listed before "business"
        assert infer_occupation("ofw with a small business") == "OFW"

    @pytest.mark.parametrize("text,expected", [
        ("based in SINGAPORE", "Singapore"),
        ("Manila based", "Manila, Philippines"),
        ("Davao City", "Davao, Philippines"),
        ("somewhere else", "Unknown"),
    ])
    def test_location(self, text, expected):
        assert infer_location(text) == expected

    def test_income_bracket(self):
        assert infer_income_bracket("OFW", "Unknown") == "high"
        assert infer_income_bracket("Professional", "Singapore") == "high"
        assert infer_income_bracket("Business Owner", "Manila, Philippines") == "medium"


class TestDigitalFootprint:
    def test_in_unit_range(self):
        for text in ("", "Ana Reyes", "Ana Reyes fb.com/ana instagram @ana 09171234567"):
            value = digital_footprint(_entity(text))
            assert 0.0 <= value <= 1.0

    def test_deterministic(self):
        entity = _entity("Ben Cruz ben@example.com", email="ben@example.com")
        assert digital_footprint(entity) == digital_footprint(entity)
        assert enrich(entity) == enrich(entity)

    def test_more_evidence_never_lowers_footprint(self):
        bare = _entity("Ben Cruz")
        with_email = _entity("Ben Cruz", email="ben@example.com")
        with_both = _entity("Ben Cruz", email="ben@example.com", phone="09171234567")
        assert digital_footprint(bare) < digital_footprint(with_email) < digital_footprint(with_both)

    def test_active_online_threshold(self):
        entity = _entity("Ben Cruz")
        assert social_signals(entity, 0.3).active_online
        assert not social_signals(entity, 0.29).active_online

    def test_engagement_in_unit_range(self):
        signals = social_signals(_entity("Ben Cruz"), 1.0)
        assert 0.0 <= signals.engagement_level <= 1.0
