"""SQLAlchemy-backed persistence for experiments, closed buckets and history.

Every database failure surfaces as StorageUnavailableError so callers can skip
the cycle and retry on the next tick.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .aggregator import LatencySketch, MetricBucket
from .db import Base, SessionLocal
from .errors import StorageUnavailableError
from .experiment import (
    ExperimentConfig,
    ExperimentStatus,
    Variant,
    auto_promote_from_dict,
    config_to_dict,
    criterion_from_dict,
    split_from_dict,
)
from .models import (
    AuditEntryRecord,
    DecisionRecord,
    ExperimentRecord,
    MetricBucketRecord,
    ProcessedEventRecord,
)
from .promotion import Action, MachineState, PromotionDecision, State

logger = logging.getLogger(__name__)


def _bucket_from_record(row: MetricBucketRecord) -> MetricBucket:
    return MetricBucket(
        experiment_id=row.experiment_id,
        variant=Variant(row.variant),
        window_start=row.window_start,
        window_seconds=row.window_seconds,
        request_count=row.request_count,
        success_count=row.success_count,
        error_count=row.error_count,
        latency=LatencySketch.from_dict(row.latency),
        cost_sum=row.cost_sum,
        quality_score_sum=row.quality_score_sum,
        quality_score_count=row.quality_score_count,
        custom_sums=dict(row.custom_sums or {}),
        custom_counts=dict(row.custom_counts or {}),
        closed=True,
    )


def _bucket_to_record(bucket: MetricBucket) -> MetricBucketRecord:
    return MetricBucketRecord(
        experiment_id=bucket.experiment_id,
        variant=bucket.variant.value,
        window_start=bucket.window_start,
        window_seconds=bucket.window_seconds,
        request_count=bucket.request_count,
        success_count=bucket.success_count,
        error_count=bucket.error_count,
        latency=bucket.latency.to_dict(),
        cost_sum=bucket.cost_sum,
        quality_score_sum=bucket.quality_score_sum,
        quality_score_count=bucket.quality_score_count,
        custom_sums=dict(bucket.custom_sums),
        custom_counts=dict(bucket.custom_counts),
    )


def _experiment_from_record(row: ExperimentRecord) -> Tuple[ExperimentConfig, MachineState]:
    data = row.config or {}
    config = ExperimentConfig(
        id=row.id,
        name=row.name,
        variant_a_ref=row.variant_a_ref,
        variant_b_ref=row.variant_b_ref,
        traffic_split=split_from_dict(data.get("traffic_split", {})),
        success_criteria=tuple(
            criterion_from_dict(c, i) for i, c in enumerate(data.get("success_criteria", []))
        ),
        auto_promote=auto_promote_from_dict(data.get("auto_promote", {})),
        status=ExperimentStatus(row.status),
        winner=Variant(row.winner) if row.winner else None,
        created_at=row.created_at.replace(tzinfo=timezone.utc).timestamp() if row.created_at else 0.0,
    )
    state = MachineState(
        state=State(row.state),
        criteria_first_met_at=row.criteria_first_met_at,
        rollback_first_met_at=row.rollback_first_met_at,
        stage_started_at=row.stage_started_at,
        halted=bool(row.halted),
        halt_reason=row.halt_reason,
        aggregation_since=row.aggregation_since,
        safety_since=row.safety_since,
        pending_split=row.pending_split,
    )
    return config, state


class ExperimentStore:
    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Storage operation failed: %s", exc)
            raise StorageUnavailableError(str(exc)) from exc
        finally:
            db.close()

    def create_tables(self, bind) -> None:
        try:
            Base.metadata.create_all(bind=bind)
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(str(exc)) from exc

    # --- experiments ---------------------------------------------------------

    def save_experiment(self, config: ExperimentConfig, state: MachineState) -> None:
        with self._session() as db:
            row = db.get(ExperimentRecord, config.id)
            if row is None:
                row = ExperimentRecord(id=config.id)
                db.add(row)
            row.name = config.name
            row.created_at = datetime.fromtimestamp(config.created_at, timezone.utc).replace(tzinfo=None)
            row.status = config.status.value
            row.variant_a_ref = config.variant_a_ref
            row.variant_b_ref = config.variant_b_ref
            row.config = config_to_dict(config)
            row.winner = config.winner.value if config.winner else None
            row.state = state.state.value
            row.criteria_first_met_at = state.criteria_first_met_at
            row.rollback_first_met_at = state.rollback_first_met_at
            row.stage_started_at = state.stage_started_at
            row.halted = state.halted
            row.halt_reason = state.halt_reason
            row.aggregation_since = state.aggregation_since
            row.safety_since = state.safety_since
            row.pending_split = state.pending_split

    def list_experiments(self) -> List[Tuple[ExperimentConfig, MachineState]]:
        with self._session() as db:
            rows = db.query(ExperimentRecord).order_by(ExperimentRecord.created_at).all()
            return [_experiment_from_record(row) for row in rows]

    # --- buckets -------------------------------------------------------------

    def save_bucket(self, bucket: MetricBucket, event_ids: Iterable[str] = ()) -> None:
        """Persist a closed bucket and its event ids in one transaction.

        Saving the same window twice is a no-op, so a retried close is safe.
        """
        with self._session() as db:
            exists = (
                db.query(MetricBucketRecord.id)
                .filter(
                    MetricBucketRecord.experiment_id == bucket.experiment_id,
                    MetricBucketRecord.variant == bucket.variant.value,
                    MetricBucketRecord.window_start == bucket.window_start,
                )
                .first()
            )
            if exists:
                logger.debug("Bucket %s/%s@%s already stored",
                             bucket.experiment_id, bucket.variant.value, bucket.window_start)
                return
            db.add(_bucket_to_record(bucket))
            for event_id in event_ids:
                db.add(ProcessedEventRecord(
                    experiment_id=bucket.experiment_id,
                    event_id=event_id,
                    recorded_at=bucket.window_end,
                ))

    def load_buckets(self, experiment_id: str, variant: Variant, since: Optional[float] = None) -> List[MetricBucket]:
        with self._session() as db:
            query = db.query(MetricBucketRecord).filter(
                MetricBucketRecord.experiment_id == experiment_id,
                MetricBucketRecord.variant == Variant(variant).value,
            )
            if since is not None:
                # any window that overlaps [since, now)
                query = query.filter(MetricBucketRecord.window_start + MetricBucketRecord.window_seconds > since)
            rows = query.order_by(MetricBucketRecord.window_start).all()
            return [_bucket_from_record(row) for row in rows]

    def replace_buckets(
        self,
        experiment_id: str,
        variant: Variant,
        old: Iterable[MetricBucket],
        new: Iterable[MetricBucket],
    ) -> None:
        """Swap `old` buckets for their rollup atomically."""
        starts = [b.window_start for b in old]
        with self._session() as db:
            (
                db.query(MetricBucketRecord)
                .filter(
                    MetricBucketRecord.experiment_id == experiment_id,
                    MetricBucketRecord.variant == Variant(variant).value,
                    MetricBucketRecord.window_start.in_(starts),
                )
                .delete(synchronize_session=False)
            )
            db.flush()
            for bucket in new:
                db.add(_bucket_to_record(bucket))

    def load_event_ids(self, since: float) -> List[Tuple[str, str, float]]:
        with self._session() as db:
            rows = (
                db.query(ProcessedEventRecord)
                .filter(ProcessedEventRecord.recorded_at >= since)
                .all()
            )
            return [(r.experiment_id, r.event_id, r.recorded_at) for r in rows]

    # --- decisions and audit -------------------------------------------------

    def save_decision(self, experiment_id: str, decision: PromotionDecision) -> None:
        with self._session() as db:
            db.add(DecisionRecord(
                experiment_id=experiment_id,
                timestamp=decision.timestamp,
                variant_a_score=decision.variant_a_score,
                variant_b_score=decision.variant_b_score,
                p_value=decision.p_value,
                is_significant=decision.is_significant,
                samples_a=decision.samples_a,
                samples_b=decision.samples_b,
                criteria_first_met_at=decision.criteria_first_met_at,
                action=decision.action.value,
                state=decision.state.value,
                reason=decision.reason,
            ))

    def list_decisions(self, experiment_id: str, limit: int = 100) -> List[PromotionDecision]:
        with self._session() as db:
            rows = (
                db.query(DecisionRecord)
                .filter(DecisionRecord.experiment_id == experiment_id)
                .order_by(DecisionRecord.id.desc())
                .limit(limit)
                .all()
            )
            return [
                PromotionDecision(
                    timestamp=r.timestamp,
                    variant_a_score=r.variant_a_score,
                    variant_b_score=r.variant_b_score,
                    p_value=r.p_value,
                    is_significant=r.is_significant,
                    samples_a=r.samples_a,
                    samples_b=r.samples_b,
                    criteria_first_met_at=r.criteria_first_met_at,
                    action=Action(r.action),
                    state=State(r.state),
                    reason=r.reason or "",
                )
                for r in rows
            ]

    def append_audit(self, experiment_id: str, command: str, actor: Optional[str],
                     payload: Optional[dict], timestamp: float) -> None:
        with self._session() as db:
            db.add(AuditEntryRecord(
                experiment_id=experiment_id,
                command=command,
                actor=actor,
                payload=payload,
                timestamp=timestamp,
            ))

    def list_audit(self, experiment_id: str) -> List[dict]:
        with self._session() as db:
            rows = (
                db.query(AuditEntryRecord)
                .filter(AuditEntryRecord.experiment_id == experiment_id)
                .order_by(AuditEntryRecord.id)
                .all()
            )
            return [
                {
                    "command": r.command,
                    "actor": r.actor,
                    "payload": r.payload,
                    "timestamp": r.timestamp,
                }
                for r in rows
            ]
