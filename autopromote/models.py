# autopromote/models.py
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


class ExperimentRecord(Base):
    __tablename__ = "experiments"

    id = Column(String(128), primary_key=True)
    name = Column(String, nullable=False)
    status = Column(String(32), nullable=False, default="draft")
    variant_a_ref = Column(String, nullable=False)
    variant_b_ref = Column(String, nullable=False)

    # traffic_split / success_criteria / auto_promote, see experiment.config_to_dict
    config = Column(JSON, nullable=False)
    winner = Column(String(1), nullable=True)

    # Promotion state machine
    state = Column(String(32), nullable=False, default="collecting")
    criteria_first_met_at = Column(Float, nullable=True)
    rollback_first_met_at = Column(Float, nullable=True)
    stage_started_at = Column(Float, nullable=True)
    halted = Column(Boolean, nullable=False, default=False)
    halt_reason = Column(Text, nullable=True)

    # Aggregates are summed from here ("experiment start or last reset")
    aggregation_since = Column(Float, nullable=True)
    # Error-rate safety check window start
    safety_since = Column(Float, nullable=True)

    # Apply-split instruction waiting for the config store to acknowledge it
    pending_split = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MetricBucketRecord(Base):
    __tablename__ = "metric_buckets"
    __table_args__ = (
        UniqueConstraint("experiment_id", "variant", "window_start", name="uq_bucket_window"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(128), nullable=False, index=True)
    variant = Column(String(1), nullable=False)
    window_start = Column(Float, nullable=False, index=True)
    window_seconds = Column(Float, nullable=False)

    request_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    latency = Column(JSON, nullable=False)  # LatencySketch.to_dict()
    cost_sum = Column(Float, nullable=False, default=0.0)
    quality_score_sum = Column(Float, nullable=False, default=0.0)
    quality_score_count = Column(Integer, nullable=False, default=0)
    custom_sums = Column(JSON, nullable=False, default=dict)
    custom_counts = Column(JSON, nullable=False, default=dict)


class ProcessedEventRecord(Base):
    __tablename__ = "processed_events"
    __table_args__ = (
        UniqueConstraint("experiment_id", "event_id", name="uq_processed_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(128), nullable=False, index=True)
    event_id = Column(String(256), nullable=False)
    recorded_at = Column(Float, nullable=False, index=True)


class DecisionRecord(Base):
    __tablename__ = "promotion_decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(128), nullable=False, index=True)
    timestamp = Column(Float, nullable=False)
    variant_a_score = Column(Float, nullable=True)
    variant_b_score = Column(Float, nullable=True)
    p_value = Column(Float, nullable=True)
    is_significant = Column(Boolean, nullable=False, default=False)
    samples_a = Column(Integer, nullable=False, default=0)
    samples_b = Column(Integer, nullable=False, default=0)
    criteria_first_met_at = Column(Float, nullable=True)
    action = Column(String(32), nullable=False)
    state = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)


class AuditEntryRecord(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(128), nullable=False, index=True)
    command = Column(String(64), nullable=False)
    actor = Column(String(128), nullable=True)
    payload = Column(JSON, nullable=True)
    timestamp = Column(Float, nullable=False)
