from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from deepscan import services
from deepscan.config import get_settings
from deepscan.db import get_session, get_session_factory, init_db
from deepscan.models import SourceType
from deepscan.pipeline import PipelineOrchestrator, SessionNotRunnable
from deepscan.schemas import FEATURE_NAMES, ScoredResultOut, SessionStatusOut
from deepscan.weights import UnknownOutcomeFeature, WeightStoreRace

log = logging.getLogger(__name__)

_orchestrator: PipelineOrchestrator | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def deepscan_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _orchestrator
    init_db()
    _orchestrator = PipelineOrchestrator(get_session_factory())
    yield


mcp = FastMCP(
    "DeepScan",
    instructions=(
        "DeepScan turns raw contact data into scored sales prospects. "
        "Use create_scan() with pasted text, CSV, OCR text or a social export, "
        "then list_scan_results(session_id) to read prospects ranked by ScoutScore. "
        "Report outcomes with record_outcome() so the user's weights adapt."
    ),
    lifespan=deepscan_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _pipeline() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator(get_session_factory())
    return _orchestrator


def _status(session, session_id: str) -> dict:
    status = services.get_session_status(session, session_id)
    return SessionStatusOut.model_validate(status).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("deepscan://overview")
def deepscan_overview() -> str:
    """Overview of DeepScan: stages, features and buckets."""
    return json.dumps({
        "system": "DeepScan: scan-to-score lead pipeline",
        "stages": ["idle", "preprocessing", "parsing", "enriching", "deep_intel", "scoring", "complete"],
        "source_types": [s.value for s in SourceType],
        "features": list(FEATURE_NAMES),
        "buckets": {"hot": "score >= 75", "warm": "score >= 50", "cold": "below 50"},
        "workflow": [
            "1. create_scan(user_id, source_type, raw_payload): runs the full pipeline.",
            "2. get_scan_status(session_id): stage, progress and error message.",
            "3. list_scan_results(session_id): prospects ranked by score.",
            "4. record_outcome(user_id, feature, outcome, feature_value): adapt weights.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Scans
# ---------------------------------------------------------------------------


@mcp.tool()
def create_scan(user_id: str, source_type: str, raw_payload: str) -> dict:
    """Create a scan session and run it to completion.

    Args:
        user_id: Owner of the scan; their scoring weights are used.
        source_type: One of pasted_text, csv, image_ocr, social_export.
        raw_payload: The raw text (or CSV / JSON export) to scan.
    """
    try:
        source = SourceType(source_type)
    except ValueError:
        return {"error": f"Unknown source_type {source_type!r}; expected one of {[s.value for s in SourceType]}"}
    with _session() as session:
        scan = services.create_session(session, user_id, source, raw_payload)
        session.commit()
        session_id = scan.id
    try:
        _pipeline().run(session_id)
    except SessionNotRunnable as exc:
        return {"error": str(exc)}
    with _session() as session:
        return _status(session, session_id)


@mcp.tool()
def get_scan_status(session_id: str) -> dict:
    """Get the stage, progress percentage and error message of a scan session."""
    with _session() as session:
        try:
            return _status(session, session_id)
        except services.SessionNotFound as exc:
            return {"error": str(exc)}


@mcp.tool()
def list_scan_results(session_id: str, bucket: str | None = None, limit: int = 50) -> dict:
    """List scored prospects for a session, highest score first.

    Args:
        session_id: The scan session.
        bucket: Optional filter: hot, warm or cold.
        limit: Max results (default 50, max 500).
    """
    with _session() as session:
        try:
            rows = services.list_results(session, _pipeline().result_store, session_id)
        except services.SessionNotFound as exc:
            return {"error": str(exc)}
    if bucket:
        rows = [r for r in rows if r["bucket"] == bucket.strip().lower()]
    rows = rows[:max(1, min(limit, 500))]
    return {
        "session_id": session_id,
        "results": [ScoredResultOut.model_validate(r).model_dump(mode="json") for r in rows],
    }


# ---------------------------------------------------------------------------
# Tools: Weights & Maintenance
# ---------------------------------------------------------------------------


@mcp.tool()
def record_outcome(user_id: str, feature: str, outcome: str, feature_value: float) -> dict:
    """Reinforce (closed) or decay (ignored) one of the user's feature weights.

    Args:
        user_id: The user whose weights change.
        feature: One of intent_strength, buying_power, emotional_fit,
                 relationship_closeness, need_urgency, digital_presence
                 (camelCase spellings such as buyingPower are accepted).
        outcome: closed or ignored.
        feature_value: The prospect's value for that feature, in [0, 1].
    """
    store = _pipeline().weight_store
    try:
        services.record_outcome(store, user_id, feature, outcome, feature_value)
    except (UnknownOutcomeFeature, WeightStoreRace) as exc:
        return {"error": str(exc)}
    return {"user_id": user_id, "weights": store.get(user_id)}


@mcp.tool()
def get_user_weights(user_id: str) -> dict:
    """Current scoring weights for a user (defaults on first access)."""
    return {"user_id": user_id, "weights": _pipeline().weight_store.get(user_id)}


@mcp.tool()
def reconcile_stale_scans(timeout_minutes: float | None = None) -> dict:
    """Force-complete scans stuck past the timeout whose last event already shows 100%."""
    if timeout_minutes is not None and timeout_minutes <= 0:
        return {"error": "timeout_minutes must be positive"}
    return {"reconciled": services.reconcile_stale_sessions(_pipeline(), timeout_minutes)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the DeepScan MCP server over stdio."""
    logging.basicConfig(level=get_settings().log_level, format="%(levelname)s %(name)s: %(message)s")
    mcp.run()


if __name__ == "__main__":
    main()
