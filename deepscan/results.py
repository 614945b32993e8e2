"""Append-only persistence for extracted entities, scored results and progress events."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deepscan.db import PersistenceWriteFailure, session_scope
from deepscan.models import ScanEntity, ScanEvent, ScanResult
from deepscan.schemas import ExtractedEntity, ScoredProspect
from deepscan.utils import json_parse

log = logging.getLogger(__name__)


class ResultStore:
    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def _write(self, rows: Sequence[Any], what: str) -> None:
        try:
            with session_scope(self._factory) as session:
                session.add_all(rows)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceWriteFailure(f"Failed to persist {what}: {exc}") from exc

    @contextmanager
    def _reading(self, session: Session | None) -> Iterator[Session]:
        # reads join the caller's transaction when one is open
        if session is not None:
            yield session
            return
        with session_scope(self._factory) as own:
            yield own

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def add_entities(self, session_id: str, entities: Sequence[ExtractedEntity]) -> None:
        self._write([
            ScanEntity(
                session_id=session_id, position=idx, raw_text=e.raw_text,
                name=e.name, email=e.email, phone=e.phone, source_tag=e.source_tag,
            )
            for idx, e in enumerate(entities)
        ], f"{len(entities)} entities for session {session_id}")

    def list_entities(self, session_id: str) -> list[ExtractedEntity]:
        with session_scope(self._factory) as session:
            rows = session.execute(
                select(ScanEntity).where(ScanEntity.session_id == session_id).order_by(ScanEntity.position)
            ).scalars().all()
            return [
                ExtractedEntity(raw_text=r.raw_text, name=r.name, email=r.email,
                                phone=r.phone, source_tag=r.source_tag)
                for r in rows
            ]

    # ------------------------------------------------------------------
    # Scored results
    # ------------------------------------------------------------------

    def append_results(self, session_id: str, user_id: str, scored: Sequence[ScoredProspect]) -> None:
        self._write([
            ScanResult(
                session_id=session_id, user_id=user_id, position=s.position,
                composite_score=s.composite_score, bucket=s.bucket,
                prospect_json=s.snapshot.model_dump_json(),
                features_json=s.features.model_dump_json(),
                weights_json=json.dumps(s.weights),
            )
            for s in scored
        ], f"{len(scored)} results for session {session_id}")

    def list_results(self, session_id: str, session: Session | None = None) -> list[dict[str, Any]]:
        with self._reading(session) as session:
            rows = session.execute(
                select(ScanResult).where(ScanResult.session_id == session_id)
                .order_by(ScanResult.composite_score.desc(), ScanResult.position)
            ).scalars().all()
            return [result_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Progress events
    # ------------------------------------------------------------------

    def append_event(
        self, session_id: str, user_id: str, stage: str, progress: int, message: str,
        *, event_type: str = "progress", data: dict[str, Any] | None = None,
    ) -> None:
        self._write([ScanEvent(
            session_id=session_id, user_id=user_id, event_type=event_type,
            stage=stage, progress=progress, message=message,
            data_json=json.dumps(data or {}),
        )], f"event for session {session_id}")

    def list_events(self, session_id: str, session: Session | None = None) -> list[dict[str, Any]]:
        with self._reading(session) as session:
            rows = session.execute(
                select(ScanEvent).where(ScanEvent.session_id == session_id).order_by(ScanEvent.id)
            ).scalars().all()
            return [event_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def result_dict(r: ScanResult) -> dict[str, Any]:
    return {
        "id": r.id, "session_id": r.session_id, "position": r.position,
        "composite_score": r.composite_score, "bucket": r.bucket,
        "prospect": json_parse(r.prospect_json),
        "features": json_parse(r.features_json),
        "weights": json_parse(r.weights_json),
        "created_at": r.created_at,
    }


def event_dict(e: ScanEvent) -> dict[str, Any]:
    return {
        "id": e.id, "event_type": e.event_type, "stage": e.stage,
        "progress": e.progress, "message": e.message,
        "data": json_parse(e.data_json), "created_at": e.created_at,
    }
