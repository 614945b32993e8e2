from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy.orm import Session

from deepscan import services
from deepscan.config import get_settings
from deepscan.db import PersistenceWriteFailure, get_session_factory, init_db, session_generator
from deepscan.models import Stage
from deepscan.pipeline import PipelineOrchestrator, SessionRunner
from deepscan.schemas import (
    OutcomeIn,
    ReconcileIn,
    ReconcileOut,
    ScanEventOut,
    ScoredResultOut,
    SessionCreate,
    SessionCreated,
    SessionOut,
    SessionStatusOut,
    WeightsOut,
    WeightUpdateOut,
)
from deepscan.weights import UnknownOutcomeFeature, WeightStoreRace

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    orchestrator = PipelineOrchestrator(get_session_factory())
    app.state.orchestrator = orchestrator
    app.state.runner = SessionRunner(orchestrator)
    yield
    app.state.runner.shutdown(wait=True)


app = FastAPI(
    title="DeepScan",
    version="0.1.0",
    description=(
        "Scan-to-score lead pipeline. Submit a batch of raw contact data, follow the "
        "scan through its stages, read back scored prospects, and feed closed/ignored "
        "outcomes into the per-user scoring weights. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Sessions", "description": "Create scan sessions and follow their progress."},
        {"name": "Results", "description": "Scored prospects and the progress event log."},
        {"name": "Weights", "description": "Per-user adaptive scoring weights."},
        {"name": "Admin", "description": "Maintenance operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def _orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _runner(request: Request) -> SessionRunner:
    return request.app.state.runner


# ---------------------------------------------------------------------------
# Routes: Sessions
# ---------------------------------------------------------------------------


@app.post("/api/sessions", response_model=SessionCreated, status_code=201,
          tags=["Sessions"], summary="Create a scan session and queue it for processing")
async def create_session(
    body: SessionCreate,
    session: Session = Depends(db_session),
    runner: SessionRunner = Depends(_runner),
):
    scan = services.create_session(session, body.user_id, body.source_type, body.raw_payload)
    session.commit()
    runner.submit(scan.id)
    return {"session_id": scan.id, "stage": scan.stage}


@app.get("/api/sessions", response_model=list[SessionOut],
         tags=["Sessions"], summary="List a user's scan sessions, newest first")
async def list_sessions(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_sessions(session, user_id, limit)


@app.get("/api/sessions/{session_id}", response_model=SessionStatusOut,
         tags=["Sessions"], summary="Get stage, progress and error message of a scan")
async def get_session_status(session_id: str, session: Session = Depends(db_session)):
    try:
        return services.get_session_status(session, session_id)
    except services.SessionNotFound as exc:
        raise HTTPException(404, str(exc))


@app.post("/api/sessions/{session_id}/run", response_model=SessionStatusOut, status_code=202,
          tags=["Sessions"], summary="Queue an idle session that is not running yet")
async def run_session(
    session_id: str,
    session: Session = Depends(db_session),
    runner: SessionRunner = Depends(_runner),
):
    try:
        scan = services.get_scan(session, session_id)
    except services.SessionNotFound as exc:
        raise HTTPException(404, str(exc))
    if scan.stage is not Stage.IDLE:
        raise HTTPException(409, f"Scan session {session_id} is {scan.stage.value}; only idle sessions can run")
    runner.submit(scan.id)
    return services.session_status(scan)


# ---------------------------------------------------------------------------
# Routes: Results
# ---------------------------------------------------------------------------


@app.get("/api/sessions/{session_id}/results", response_model=list[ScoredResultOut],
         tags=["Results"], summary="Scored prospects, highest score first")
async def list_results(
    session_id: str,
    session: Session = Depends(db_session),
    orchestrator: PipelineOrchestrator = Depends(_orchestrator),
):
    try:
        return services.list_results(session, orchestrator.result_store, session_id)
    except services.SessionNotFound as exc:
        raise HTTPException(404, str(exc))


@app.get("/api/sessions/{session_id}/events", response_model=list[ScanEventOut],
         tags=["Results"], summary="Progress events in the order they were written")
async def list_events(
    session_id: str,
    session: Session = Depends(db_session),
    orchestrator: PipelineOrchestrator = Depends(_orchestrator),
):
    try:
        return services.list_events(session, orchestrator.result_store, session_id)
    except services.SessionNotFound as exc:
        raise HTTPException(404, str(exc))


# ---------------------------------------------------------------------------
# Routes: Weights
# ---------------------------------------------------------------------------


@app.post("/api/outcomes", status_code=204,
          tags=["Weights"], summary="Record a closed/ignored outcome against one feature")
def record_outcome(body: OutcomeIn, orchestrator: PipelineOrchestrator = Depends(_orchestrator)):
    try:
        services.record_outcome(
            orchestrator.weight_store, body.user_id, body.feature, body.outcome, body.feature_value,
        )
    except UnknownOutcomeFeature as exc:
        raise HTTPException(422, str(exc))
    except (WeightStoreRace, PersistenceWriteFailure) as exc:
        raise HTTPException(503, str(exc))


@app.get("/api/users/{user_id}/weights", response_model=WeightsOut,
         tags=["Weights"], summary="Current scoring weights for a user")
def get_weights(user_id: str, orchestrator: PipelineOrchestrator = Depends(_orchestrator)):
    return {"user_id": user_id, "weights": orchestrator.weight_store.get(user_id)}


@app.get("/api/users/{user_id}/weights/history", response_model=list[WeightUpdateOut],
         tags=["Weights"], summary="Weight updates for a user, newest first")
def get_weight_history(
    user_id: str,
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: PipelineOrchestrator = Depends(_orchestrator),
):
    return services.weight_history(orchestrator.weight_store, user_id, limit)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/maintenance/reconcile", response_model=ReconcileOut,
          tags=["Admin"], summary="Force-complete stuck sessions whose last event shows completion")
def reconcile(body: ReconcileIn | None = None, orchestrator: PipelineOrchestrator = Depends(_orchestrator)):
    minutes = body.timeout_minutes if body else None
    return {"reconciled": services.reconcile_stale_sessions(orchestrator, minutes)}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("deepscan.app:app", host="127.0.0.1", port=8001, log_level=get_settings().log_level.lower())


if __name__ == "__main__":
    main()
