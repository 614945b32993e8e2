"""Per-user adaptive scoring weights.

Weights live in ``user_scoring_weights`` with one row per (user, feature) and
a ``version`` column. ``record_outcome`` is a compare-and-swap on that
version: read the row, compute the bounded step, then update only if the
version is unchanged. A lost swap is retried a bounded number of times.
Every applied update appends a ``WeightUpdateEvent`` in the same transaction.
"""
from __future__ import annotations

import logging
import math
import time

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from deepscan.config import Settings, get_settings
from deepscan.db import PersistenceWriteFailure, session_scope
from deepscan.models import Outcome, UserScoringWeight, WeightUpdateEvent
from deepscan.schemas import DEFAULT_WEIGHTS, FEATURE_NAMES, canonical_feature
from deepscan.utils import utcnow

log = logging.getLogger(__name__)

_RETRY_BACKOFF_SECONDS = 0.01


class UnknownOutcomeFeature(ValueError):
    """Outcome rejected at the boundary: unknown feature, outcome or value."""


class WeightStoreRace(RuntimeError):
    """Every compare-and-swap attempt lost to a concurrent writer."""


class AdaptiveWeightStore:
    def __init__(self, session_factory: sessionmaker, settings: Settings | None = None):
        self._factory = session_factory
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> dict[str, float]:
        """Return the user's weight vector, creating default rows on first access."""
        try:
            weights = self._read(user_id)
            if len(weights) == len(FEATURE_NAMES):
                return weights
            self._initialize(user_id, weights)
            return self._read(user_id)
        except SQLAlchemyError as exc:
            raise PersistenceWriteFailure(f"Could not load weights for {user_id}: {exc}") from exc

    def history(self, user_id: str, limit: int = 100) -> list[WeightUpdateEvent]:
        with session_scope(self._factory) as session:
            return list(session.execute(
                select(WeightUpdateEvent)
                .where(WeightUpdateEvent.user_id == user_id)
                .order_by(WeightUpdateEvent.id.desc())
                .limit(limit)
            ).scalars().all())

    def _read(self, user_id: str) -> dict[str, float]:
        with session_scope(self._factory) as session:
            rows = session.execute(
                select(UserScoringWeight.feature, UserScoringWeight.weight)
                .where(UserScoringWeight.user_id == user_id)
            ).all()
        found = {feature: weight for feature, weight in rows}
        return {name: found[name] for name in FEATURE_NAMES if name in found}

    def _initialize(self, user_id: str, existing: dict[str, float]) -> None:
        with session_scope(self._factory) as session:
            for feature in FEATURE_NAMES:
                if feature not in existing:
                    session.add(UserScoringWeight(
                        user_id=user_id, feature=feature,
                        weight=DEFAULT_WEIGHTS[feature], version=0,
                    ))
            try:
                session.commit()
                log.info("Initialized default scoring weights for user %s", user_id)
            except IntegrityError:
                # another caller initialized the same user first
                session.rollback()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_outcome(
        self, user_id: str, feature: str, outcome: Outcome | str, feature_value: float,
    ) -> WeightUpdateEvent:
        """Reinforce (``closed``) or decay (``ignored``) one feature weight."""
        feature, outcome, feature_value = self._validate(feature, outcome, feature_value)
        self.get(user_id)

        step = min(self._settings.max_weight_step, self._settings.learning_rate * feature_value)
        delta = step if outcome is Outcome.CLOSED else -step

        attempts = self._settings.weight_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                event = self._compare_and_swap(user_id, feature, outcome, feature_value, delta)
            except WeightStoreRace:
                log.debug("Weight CAS lost for %s/%s (attempt %d/%d)", user_id, feature, attempt, attempts)
            except OperationalError as exc:
                log.warning("Weight update lock timeout for %s/%s: %s", user_id, feature, exc)
            except SQLAlchemyError as exc:
                raise PersistenceWriteFailure(f"Weight update failed for {user_id}/{feature}: {exc}") from exc
            else:
                return event
            time.sleep(_RETRY_BACKOFF_SECONDS * attempt)
        log.warning("Weight update for %s/%s abandoned after %d attempts", user_id, feature, attempts)
        raise WeightStoreRace(f"Could not update weight {feature!r} for {user_id} after {attempts} attempts")

    def reset(self, user_id: str) -> dict[str, float]:
        """Restore the default weight vector for *user_id*."""
        self.get(user_id)
        try:
            with session_scope(self._factory) as session:
                for feature in FEATURE_NAMES:
                    session.execute(
                        update(UserScoringWeight)
                        .where(UserScoringWeight.user_id == user_id, UserScoringWeight.feature == feature)
                        .values(
                            weight=DEFAULT_WEIGHTS[feature],
                            version=UserScoringWeight.version + 1,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceWriteFailure(f"Weight reset failed for {user_id}: {exc}") from exc
        return self._read(user_id)

    def _compare_and_swap(
        self, user_id: str, feature: str, outcome: Outcome, feature_value: float, delta: float,
    ) -> WeightUpdateEvent:
        with session_scope(self._factory) as session:
            row = session.execute(
                select(UserScoringWeight.id, UserScoringWeight.weight, UserScoringWeight.version)
                .where(UserScoringWeight.user_id == user_id, UserScoringWeight.feature == feature)
            ).one()
            before = row.weight
            after = max(0.0, before + delta)
            result = session.execute(
                update(UserScoringWeight)
                .where(UserScoringWeight.id == row.id, UserScoringWeight.version == row.version)
                .values(weight=after, version=row.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise WeightStoreRace(f"{user_id}/{feature} changed during update")
            event = WeightUpdateEvent(
                user_id=user_id, feature=feature, outcome=outcome,
                feature_value=feature_value, applied_delta=after - before,
                weight_before=before, weight_after=after,
            )
            session.add(event)
            session.commit()
        log.info("Weight %s for %s: %.4f -> %.4f (%s)", feature, user_id, before, after, outcome.value)
        return event

    @staticmethod
    def _validate(feature: str, outcome: Outcome | str, feature_value: float) -> tuple[str, Outcome, float]:
        name = canonical_feature(feature) if isinstance(feature, str) else None
        if name is None:
            raise UnknownOutcomeFeature(f"Unknown feature {feature!r}; expected one of {', '.join(FEATURE_NAMES)}")
        try:
            parsed = Outcome(outcome)
        except ValueError:
            raise UnknownOutcomeFeature(f"Unknown outcome {outcome!r}; expected 'closed' or 'ignored'") from None
        try:
            value = float(feature_value)
        except (TypeError, ValueError):
            raise UnknownOutcomeFeature(f"feature_value must be a number, got {feature_value!r}") from None
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise UnknownOutcomeFeature(f"feature_value must be within [0, 1], got {value}")
        return name, parsed, value
