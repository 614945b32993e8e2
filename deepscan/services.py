"""Shared operations for the deepscan API, MCP server and CLI."""
from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from deepscan.models import ScanEvent, ScanSession, SourceType, Stage, WeightUpdateEvent
from deepscan.pipeline import PipelineOrchestrator
from deepscan.results import ResultStore
from deepscan.weights import AdaptiveWeightStore

log = logging.getLogger(__name__)


class SessionNotFound(LookupError):
    """No scan session with the requested id."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def session_status(scan: ScanSession) -> dict[str, Any]:
    return {
        "session_id": scan.id, "stage": scan.stage,
        "progress_percent": scan.progress_percent,
        "status_message": scan.status_message,
        "error_message": scan.error_message,
    }


def session_detail(scan: ScanSession) -> dict[str, Any]:
    return {
        **session_status(scan),
        "owner_user_id": scan.owner_user_id, "source_type": scan.source_type,
        "total_prospects": scan.total_prospects, "hot_leads": scan.hot_leads,
        "warm_leads": scan.warm_leads, "cold_leads": scan.cold_leads,
        "created_at": scan.created_at, "updated_at": scan.updated_at,
        "completed_at": scan.completed_at,
    }


def weight_event_dict(e: WeightUpdateEvent) -> dict[str, Any]:
    return {
        "feature": e.feature, "outcome": e.outcome, "feature_value": e.feature_value,
        "applied_delta": e.applied_delta, "weight_before": e.weight_before,
        "weight_after": e.weight_after, "created_at": e.created_at,
    }


def get_scan(session: Session, session_id: str) -> ScanSession:
    scan = session.get(ScanSession, session_id)
    if scan is None:
        raise SessionNotFound(f"Scan session {session_id} not found")
    return scan


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def create_session(
    session: Session, user_id: str, source_type: SourceType | str, raw_payload: Any,
) -> ScanSession:
    """Create an idle scan session and its first event (caller must commit)."""
    if not isinstance(raw_payload, str):
        raw_payload = raw_payload.decode("utf-8", errors="replace") if isinstance(raw_payload, bytes) \
            else json.dumps(raw_payload, default=str)
    scan = ScanSession(
        owner_user_id=user_id, source_type=SourceType(source_type), raw_payload=raw_payload,
        stage=Stage.IDLE, progress_percent=0, status_message="Queued",
    )
    session.add(scan)
    session.flush()
    session.add(ScanEvent(
        session_id=scan.id, user_id=user_id, event_type="progress",
        stage=Stage.IDLE.value, progress=0, message="Scan session created",
    ))
    log.info("Created scan session %s for user %s (%s)", scan.id, user_id, scan.source_type.value)
    return scan


def get_session_status(session: Session, session_id: str) -> dict[str, Any]:
    return session_status(get_scan(session, session_id))


def list_sessions(session: Session, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    rows = session.execute(
        select(ScanSession)
        .where(ScanSession.owner_user_id == user_id)
        .order_by(ScanSession.created_at.desc())
        .limit(limit)
    ).scalars().all()
    return [session_detail(s) for s in rows]


def list_results(session: Session, store: ResultStore, session_id: str) -> list[dict[str, Any]]:
    """Scored results for a session, highest score first."""
    get_scan(session, session_id)
    return store.list_results(session_id, session)


def list_events(session: Session, store: ResultStore, session_id: str) -> list[dict[str, Any]]:
    get_scan(session, session_id)
    return store.list_events(session_id, session)


# ---------------------------------------------------------------------------
# Weights and maintenance
# ---------------------------------------------------------------------------


def record_outcome(
    store: AdaptiveWeightStore, user_id: str, feature: str, outcome: str, feature_value: float,
) -> None:
    store.record_outcome(user_id, feature, outcome, feature_value)


def weight_history(store: AdaptiveWeightStore, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
    return [weight_event_dict(e) for e in store.history(user_id, limit)]


def reconcile_stale_sessions(
    orchestrator: PipelineOrchestrator, timeout_minutes: float | None = None,
) -> int:
    timeout = timedelta(minutes=timeout_minutes) if timeout_minutes is not None else None
    return orchestrator.reconcile_stale_sessions(timeout)
