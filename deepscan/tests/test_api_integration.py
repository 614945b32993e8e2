"""Integration tests for the FastAPI endpoints.

Uses TestClient against a temporary SQLite file so the session runner's
worker threads and the request thread get their own connections.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from deepscan.config import get_settings
from deepscan.models import Stage

PAYLOAD = "\n".join([
    "Juan Dela Cruz ofw dubai juan@x.com",
    "Maria Santos needs extra income asap 09171234567",
])


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DEEPSCAN_DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    get_settings.cache_clear()
    from deepscan.app import app

    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    get_settings.cache_clear()


def _create_and_wait(client: TestClient, payload: str = PAYLOAD, user: str = "u1") -> str:
    resp = client.post("/api/sessions", json={
        "user_id": user, "source_type": "pasted_text", "raw_payload": payload,
    })
    assert resp.status_code == 201
    session_id = resp.json()["session_id"]
    assert client.app.state.runner.wait(session_id, timeout=30) is Stage.COMPLETE
    return session_id


class TestSessionEndpoints:
    def test_create_returns_idle_session(self, client):
        resp = client.post("/api/sessions", json={
            "user_id": "u1", "source_type": "pasted_text", "raw_payload": PAYLOAD,
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["stage"] == "idle"
        client.app.state.runner.wait(body["session_id"], timeout=30)

    def test_status_after_run(self, client):
        session_id = _create_and_wait(client)
        resp = client.get(f"/api/sessions/{session_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["stage"] == "complete"
        assert body["progress_percent"] == 100
        assert body["error_message"] is None

    def test_status_unknown_404(self, client):
        assert client.get("/api/sessions/missing").status_code == 404

    def test_invalid_source_type_422(self, client):
        resp = client.post("/api/sessions", json={
            "user_id": "u1", "source_type": "fax", "raw_payload": "x",
        })
        assert resp.status_code == 422

    def test_list_sessions_for_user(self, client):
        first = _create_and_wait(client)
        _create_and_wait(client, user="someone-else")
        resp = client.get("/api/sessions", params={"user_id": "u1"})
        assert resp.status_code == 200
        items = resp.json()
        assert [s["session_id"] for s in items] == [first]
        assert items[0]["total_prospects"] == 2

    def test_run_completed_session_409(self, client):
        session_id = _create_and_wait(client)
        assert client.post(f"/api/sessions/{session_id}/run").status_code == 409
        assert client.post("/api/sessions/missing/run").status_code == 404


class TestResultEndpoints:
    def test_results_sorted(self, client):
        session_id = _create_and_wait(client)
        resp = client.get(f"/api/sessions/{session_id}/results")
        assert resp.status_code == 200
        results = resp.json()
        assert len(results) == 2
        scores = [r["composite_score"] for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(r["bucket"] in ("hot", "warm", "cold") for r in results)
        assert set(results[0]["features"]) == {
            "intent_strength", "buying_power", "emotional_fit",
            "relationship_closeness", "need_urgency", "digital_presence",
        }

    def test_events(self, client):
        session_id = _create_and_wait(client)
        resp = client.get(f"/api/sessions/{session_id}/events")
        assert resp.status_code == 200
        events = resp.json()
        assert events[0]["stage"] == "idle"
        assert events[-1]["stage"] == "complete"
        assert events[-1]["progress"] == 100

    def test_results_unknown_404(self, client):
        assert client.get("/api/sessions/missing/results").status_code == 404
        assert client.get("/api/sessions/missing/events").status_code == 404


class TestWeightEndpoints:
    def test_defaults(self, client):
        resp = client.get("/api/users/u1/weights")
        assert resp.status_code == 200
        assert resp.json()["weights"]["intent_strength"] == 0.25

    def test_closed_outcome_raises_weight(self, client):
        resp = client.post("/api/outcomes", json={
            "user_id": "u1", "feature": "buying_power", "outcome": "closed", "feature_value": 0.9,
        })
        assert resp.status_code == 204
        weights = client.get("/api/users/u1/weights").json()["weights"]
        assert weights["buying_power"] == pytest.approx(0.245)

        history = client.get("/api/users/u1/weights/history").json()
        assert len(history) == 1
        assert history[0]["outcome"] == "closed"
        assert history[0]["applied_delta"] == pytest.approx(0.045)

    def test_camel_case_feature_accepted(self, client):
        resp = client.post("/api/outcomes", json={
            "user_id": "u1", "feature": "buyingPower", "outcome": "closed", "feature_value": 0.9,
        })
        assert resp.status_code == 204
        weights = client.get("/api/users/u1/weights").json()["weights"]
        assert weights["buying_power"] > 0.20

    @pytest.mark.parametrize("body", [
        {"feature": "shoeSize", "outcome": "closed", "feature_value": 0.9},
        {"feature": "buying_power", "outcome": "maybe", "feature_value": 0.9},
        {"feature": "buying_power", "outcome": "closed", "feature_value": 2.0},
    ])
    def test_invalid_outcome_422(self, client, body):
        resp = client.post("/api/outcomes", json={"user_id": "u1", **body})
        assert resp.status_code == 422
        assert client.get("/api/users/u1/weights/history").json() == []


class TestMaintenance:
    def test_reconcile_nothing_stale(self, client):
        _create_and_wait(client)
        resp = client.post("/api/maintenance/reconcile", json={"timeout_minutes": 1})
        assert resp.status_code == 200
        assert resp.json() == {"reconciled": 0}

    def test_reconcile_rejects_non_positive_timeout(self, client):
        resp = client.post("/api/maintenance/reconcile", json={"timeout_minutes": 0})
        assert resp.status_code == 422
