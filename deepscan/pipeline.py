"""Scan session state machine.

A session moves through a fixed sequence of stages::

    idle -> preprocessing -> parsing -> enriching -> deep_intel -> scoring -> complete

and may drop to ``failed`` from any non-terminal stage. For each stage the
orchestrator persists the new stage, its progress value and a status message,
appends a progress event, then runs the stage's component. Stage N+1 never
starts before stage N's output is persisted.

Failure handling
----------------
Any exception raised while a stage runs moves the session to ``failed`` with
progress 0 and the exception text as ``error_message``. Rows written by earlier
stages (entities, results, events) are left in place.

Terminal sessions are never resumed: :meth:`PipelineOrchestrator.run` only
claims sessions that are still ``idle``. :meth:`reconcile_stale_sessions` is the
one path that moves a stuck session to ``complete`` without running it.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from deepscan.config import Settings, get_settings
from deepscan.db import PersistenceWriteFailure, session_scope
from deepscan.enricher import enrich
from deepscan.features import build_feature_vector
from deepscan.ingestion import normalize, prepare_payload
from deepscan.intent import analyze
from deepscan.models import STAGE_PROGRESS, ScanEvent, ScanSession, SourceType, Stage
from deepscan.results import ResultStore
from deepscan.schemas import (
    EnrichedProspect, ExtractedEntity, IntentSignals, ProspectSnapshot, ScoredProspect,
)
from deepscan.scorer import bucket_for, compute_composite_score
from deepscan.utils import utcnow
from deepscan.weights import AdaptiveWeightStore

log = logging.getLogger(__name__)

STAGE_MESSAGES: dict[Stage, str] = {
    Stage.PREPROCESSING: "Initializing deep scan...",
    Stage.PARSING: "Extracting entities and contacts...",
    Stage.ENRICHING: "Enriching prospect data...",
    Stage.DEEP_INTEL: "Running deep intelligence analysis...",
    Stage.SCORING: "Computing ScoutScores...",
    Stage.COMPLETE: "Deep scan completed successfully!",
}


class SessionNotRunnable(RuntimeError):
    """The session is not idle: it is running elsewhere, complete or failed."""


@dataclass
class _RunState:
    session_id: str
    user_id: str
    source_type: SourceType
    raw_payload: str
    stage: Stage = Stage.IDLE
    text: str = ""
    entities: list[ExtractedEntity] = field(default_factory=list)
    prospects: list[EnrichedProspect] = field(default_factory=list)
    signals: list[IntentSignals] = field(default_factory=list)
    scored: list[ScoredProspect] = field(default_factory=list)


class PipelineOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        weight_store: AdaptiveWeightStore | None = None,
        result_store: ResultStore | None = None,
        settings: Settings | None = None,
    ):
        self._factory = session_factory
        self.settings = settings or get_settings()
        self.weight_store = weight_store or AdaptiveWeightStore(session_factory, self.settings)
        self.result_store = result_store or ResultStore(session_factory)
        self._stages: list[tuple[Stage, Callable[[_RunState], None]]] = [
            (Stage.PREPROCESSING, self._preprocess),
            (Stage.PARSING, self._parse),
            (Stage.ENRICHING, self._enrich),
            (Stage.DEEP_INTEL, self._deep_intel),
            (Stage.SCORING, self._score),
        ]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, session_id: str) -> Stage:
        """Drive an idle session to ``complete`` or ``failed`` and return the final stage."""
        state = self._claim(session_id)
        log.info("Scan %s started for user %s (%s)", session_id, state.user_id, state.source_type.value)
        try:
            for stage, component in self._stages:
                self._enter(state, stage, STAGE_MESSAGES[stage])
                component(state)
            self._finish(state)
        except Exception as exc:
            log.exception("Scan %s failed during %s", session_id, state.stage.value)
            self._fail(state, exc)
            return Stage.FAILED
        log.info("Scan %s complete: %d prospects", session_id, len(state.scored))
        return Stage.COMPLETE

    def stage_of(self, session_id: str) -> Stage | None:
        with session_scope(self._factory) as session:
            return session.execute(
                select(ScanSession.stage).where(ScanSession.id == session_id)
            ).scalar_one_or_none()

    def _claim(self, session_id: str) -> _RunState:
        # Check and first transition share one write transaction, so only one
        # runner can take a given idle session.
        message = STAGE_MESSAGES[Stage.PREPROCESSING]
        with session_scope(self._factory) as session:
            scan = session.execute(
                select(ScanSession).where(ScanSession.id == session_id).with_for_update()
            ).scalar_one_or_none()
            if scan is None:
                raise LookupError(f"Scan session {session_id} not found")
            if scan.stage is not Stage.IDLE:
                raise SessionNotRunnable(
                    f"Scan session {session_id} is {scan.stage.value}; only idle sessions can run"
                )
            scan.advance(Stage.PREPROCESSING, message)
            session.commit()
            return _RunState(
                session_id=scan.id, user_id=scan.owner_user_id,
                source_type=scan.source_type, raw_payload=scan.raw_payload or "",
                stage=Stage.PREPROCESSING,
            )

    # ------------------------------------------------------------------
    # Stage components
    # ------------------------------------------------------------------

    def _preprocess(self, state: _RunState) -> None:
        state.text = prepare_payload(state.raw_payload)
        lines = sum(1 for line in state.text.split("\n") if line.strip())
        self._event(state, 15, f"Prepared {lines} input lines")

    def _parse(self, state: _RunState) -> None:
        state.entities = normalize(state.text, state.source_type)
        self.result_store.add_entities(state.session_id, state.entities)
        self._event(state, 30, f"Extracted {len(state.entities)} prospects")

    def _enrich(self, state: _RunState) -> None:
        state.prospects = [enrich(entity) for entity in state.entities]
        self._event(state, 55, "Enrichment complete")

    def _deep_intel(self, state: _RunState) -> None:
        state.signals = [
            analyze(p.entity.raw_text, has_contact=p.entity.has_contact) for p in state.prospects
        ]
        self._event(state, 75, "Deep intelligence complete")

    def _score(self, state: _RunState) -> None:
        weights = self.weight_store.get(state.user_id)

        def score_one(position: int) -> ScoredProspect:
            prospect, signals = state.prospects[position], state.signals[position]
            features = build_feature_vector(prospect, signals)
            score = compute_composite_score(features, weights)
            return ScoredProspect(
                position=position,
                snapshot=ProspectSnapshot(
                    entity=prospect.entity, enrichment=prospect.enrichment, signals=signals,
                ),
                features=features,
                weights=dict(weights),
                composite_score=score,
                bucket=bucket_for(score),
            )

        positions = range(len(state.prospects))
        if len(positions) > 1:
            with ThreadPoolExecutor(
                max_workers=self.settings.scoring_workers, thread_name_prefix="deepscan-score",
            ) as pool:
                state.scored = list(pool.map(score_one, positions))
        else:
            state.scored = [score_one(p) for p in positions]

        self.result_store.append_results(state.session_id, state.user_id, state.scored)
        self._event(state, 95, f"Scored {len(state.scored)} prospects")

    def _finish(self, state: _RunState) -> None:
        buckets = Counter(s.bucket for s in state.scored)
        self._enter(
            state, Stage.COMPLETE, STAGE_MESSAGES[Stage.COMPLETE],
            total_prospects=len(state.scored),
            hot_leads=buckets["hot"], warm_leads=buckets["warm"], cold_leads=buckets["cold"],
        )

    # ------------------------------------------------------------------
    # Persistence of transitions
    # ------------------------------------------------------------------

    def _enter(self, state: _RunState, stage: Stage, message: str, **summary: int) -> None:
        if state.stage is not stage:
            self._persist_stage(state, stage, message, summary)
            state.stage = stage
        self.result_store.append_event(
            state.session_id, state.user_id, stage.value, STAGE_PROGRESS[stage], message,
            data=summary or None,
        )
        log.info("Scan %s -> %s (%d%%)", state.session_id, stage.value, STAGE_PROGRESS[stage])

    def _persist_stage(self, state: _RunState, stage: Stage, message: str, summary: dict[str, int]) -> None:
        try:
            with session_scope(self._factory) as session:
                scan = session.execute(
                    select(ScanSession).where(ScanSession.id == state.session_id).with_for_update()
                ).scalar_one()
                scan.advance(stage, message)
                for key, value in summary.items():
                    setattr(scan, key, value)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceWriteFailure(f"Could not persist stage {stage.value}: {exc}") from exc

    def _event(self, state: _RunState, progress: int, message: str) -> None:
        self.result_store.append_event(state.session_id, state.user_id, state.stage.value, progress, message)

    def _fail(self, state: _RunState, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        try:
            with session_scope(self._factory) as session:
                scan = session.execute(
                    select(ScanSession).where(ScanSession.id == state.session_id).with_for_update()
                ).scalar_one()
                if scan.stage.is_terminal:
                    log.warning("Scan %s already %s; not marking failed", state.session_id, scan.stage.value)
                    return
                scan.fail(message)
                session.commit()
        except SQLAlchemyError as write_exc:
            log.error("Could not mark scan %s failed: %s", state.session_id, write_exc)
            raise PersistenceWriteFailure(
                f"Could not mark scan {state.session_id} failed: {write_exc}"
            ) from write_exc
        self.result_store.append_event(
            state.session_id, state.user_id, Stage.FAILED.value, 0, message,
            event_type="error", data={"failed_stage": state.stage.value},
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reconcile_stale_sessions(self, timeout: timedelta | None = None) -> int:
        """Force-complete stuck sessions whose latest event already reports completion.

        A session qualifies when it is in a non-terminal stage, has not been
        updated for longer than *timeout*, and its newest progress event is at
        100% or in the ``complete`` stage. Safe to call repeatedly.
        """
        if timeout is None:
            timeout = timedelta(minutes=self.settings.stale_session_minutes)
        cutoff = utcnow() - timeout
        fixed: list[tuple[str, str]] = []
        try:
            with session_scope(self._factory) as session:
                candidates = session.execute(
                    select(ScanSession.id, ScanSession.owner_user_id, ScanSession.stage)
                    .where(
                        ScanSession.stage.not_in((Stage.COMPLETE, Stage.FAILED)),
                        ScanSession.updated_at < cutoff,
                    )
                ).all()
                for session_id, user_id, stage in candidates:
                    latest = session.execute(
                        select(ScanEvent)
                        .where(ScanEvent.session_id == session_id)
                        .order_by(ScanEvent.id.desc())
                        .limit(1)
                    ).scalars().first()
                    if latest is None or not (latest.progress >= 100 or latest.stage == Stage.COMPLETE.value):
                        continue
                    now = utcnow()
                    result = session.execute(
                        update(ScanSession)
                        .where(ScanSession.id == session_id, ScanSession.stage == stage)
                        .values(
                            stage=Stage.COMPLETE, progress_percent=100,
                            status_message="Reconciled: scan had already completed",
                            updated_at=now, completed_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        fixed.append((session_id, user_id))
                        log.warning("Reconciled stale scan %s (stuck in %s)", session_id, stage.value)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceWriteFailure(f"Stale session reconciliation failed: {exc}") from exc

        for session_id, user_id in fixed:
            self.result_store.append_event(
                session_id, user_id, Stage.COMPLETE.value, 100,
                "Session reconciled to complete", event_type="reconciled",
            )
        return len(fixed)


class SessionRunner:
    """Bounded worker pool that runs scan sessions independently of each other.

    Only sessions still queued or running are tracked. Once a run finishes its
    future is dropped and :meth:`wait` answers from the stored session stage.
    """

    def __init__(self, orchestrator: PipelineOrchestrator, max_workers: int | None = None):
        self.orchestrator = orchestrator
        workers = max_workers or orchestrator.settings.max_concurrent_sessions
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deepscan-session")
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._futures)

    def submit(self, session_id: str) -> Future:
        with self._lock:
            existing = self._futures.get(session_id)
            if existing is not None and not existing.done():
                return existing
            future = self._executor.submit(self.orchestrator.run, session_id)
            self._futures[session_id] = future
        future.add_done_callback(lambda f, sid=session_id: self._on_done(sid, f))
        return future

    def wait(self, session_id: str, timeout: float | None = None) -> Stage | None:
        """Block until the session's run ends; None if it is neither tracked nor terminal."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is not None:
            return future.result(timeout=timeout)
        stage = self.orchestrator.stage_of(session_id)
        if stage is None or not stage.is_terminal:
            return None
        return stage

    def _on_done(self, session_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(session_id) is future:
                del self._futures[session_id]
        exc = future.exception()
        if exc is not None:
            log.error("Scan %s could not run: %s", session_id, exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
