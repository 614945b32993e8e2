"""Tests for the MCP tool functions, called directly against a temporary database."""
from __future__ import annotations

import json

import pytest

from deepscan import mcp_server
from deepscan.config import get_settings
from deepscan.db import init_db
from deepscan.schemas import DEFAULT_WEIGHTS, FEATURE_NAMES

PAYLOAD = "\n".join([
    "Juan Dela Cruz ofw dubai juan@x.com",
    "Maria Santos needs extra income asap 09171234567",
    "Ben Cruz business owner ben@example.com interested",
])


@pytest.fixture()
def mcp_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DEEPSCAN_DATABASE_URL", f"sqlite:///{tmp_path / 'mcp.db'}")
    get_settings.cache_clear()
    init_db()
    monkeypatch.setattr(mcp_server, "_orchestrator", None)
    yield
    get_settings.cache_clear()


def test_import_mcp_server():
    from deepscan.mcp_server import mcp
    assert mcp is not None


def test_overview_resource():
    overview = json.loads(mcp_server.deepscan_overview())
    assert overview["features"] == list(FEATURE_NAMES)
    assert "pasted_text" in overview["source_types"]


class TestScanTools:
    def test_create_scan_runs_to_completion(self, mcp_db):
        status = mcp_server.create_scan("u1", "pasted_text", PAYLOAD)
        assert "error" not in status
        assert status["stage"] == "complete"
        assert status["progress_percent"] == 100

        again = mcp_server.get_scan_status(status["session_id"])
        assert again == status

    def test_create_scan_unknown_source(self, mcp_db):
        result = mcp_server.create_scan("u1", "fax", PAYLOAD)
        assert "fax" in result["error"]

    def test_status_unknown_session(self, mcp_db):
        assert "not found" in mcp_server.get_scan_status("missing")["error"]

    def test_list_results_ranked(self, mcp_db):
        session_id = mcp_server.create_scan("u1", "pasted_text", PAYLOAD)["session_id"]
        listing = mcp_server.list_scan_results(session_id)
        scores = [r["composite_score"] for r in listing["results"]]
        assert len(scores) == 3
        assert scores == sorted(scores, reverse=True)

        assert len(mcp_server.list_scan_results(session_id, limit=1)["results"]) == 1

        bucket = listing["results"][0]["bucket"]
        filtered = mcp_server.list_scan_results(session_id, bucket=bucket.upper())["results"]
        assert filtered and all(r["bucket"] == bucket for r in filtered)

    def test_list_results_unknown_session(self, mcp_db):
        assert "error" in mcp_server.list_scan_results("missing")


class TestWeightTools:
    def test_defaults(self, mcp_db):
        assert mcp_server.get_user_weights("u1")["weights"] == DEFAULT_WEIGHTS

    def test_record_outcome_accepts_camel_case(self, mcp_db):
        result = mcp_server.record_outcome("u1", "buyingPower", "closed", 0.9)
        assert result["weights"]["buying_power"] > DEFAULT_WEIGHTS["buying_power"]

    def test_record_outcome_unknown_feature(self, mcp_db):
        result = mcp_server.record_outcome("u1", "shoe_size", "closed", 0.9)
        assert "shoe_size" in result["error"]
        assert mcp_server.get_user_weights("u1")["weights"] == DEFAULT_WEIGHTS


class TestReconcileTool:
    @pytest.mark.parametrize("minutes", [0, -1.5])
    def test_rejects_non_positive_timeout(self, mcp_db, minutes):
        assert "error" in mcp_server.reconcile_stale_scans(minutes)

    def test_nothing_stale(self, mcp_db):
        mcp_server.create_scan("u1", "pasted_text", PAYLOAD)
        assert mcp_server.reconcile_stale_scans(5) == {"reconciled": 0}
