from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .aggregator import Outcome
from .experiment import (
    Direction,
    ExperimentConfig,
    Metric,
    SplitStrategy,
    Variant,
    auto_promote_from_dict,
    criterion_from_dict,
    split_from_dict,
)


class CanaryStageModel(BaseModel):
    percentage: float
    min_samples: Optional[int] = Field(default=None, alias="minSamples")
    min_duration_seconds: Optional[float] = Field(default=None, alias="minDurationSeconds")

    model_config = ConfigDict(populate_by_name=True)


class TrafficSplitModel(BaseModel):
    strategy: SplitStrategy = SplitStrategy.PERCENTAGE
    variant_b_percentage: float = Field(default=50.0, alias="variantBPercentage")
    variant_a_percentage: Optional[float] = Field(default=None, alias="variantAPercentage")
    stage_schedule: List[CanaryStageModel] = Field(default_factory=list, alias="stageSchedule")
    current_stage: int = Field(default=0, alias="currentStage")
    target_attribute: Optional[str] = Field(default=None, alias="targetAttribute")
    target_values: List[str] = Field(default_factory=list, alias="targetValues")

    model_config = ConfigDict(populate_by_name=True)


class SuccessCriterionModel(BaseModel):
    metric: Metric
    direction: Direction
    threshold: float
    weight: float = 1.0
    custom_name: Optional[str] = Field(default=None, alias="customName")
    percentile: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AutoPromoteModel(BaseModel):
    enabled: bool = True
    confidence_level: float = Field(default=0.95, alias="confidenceLevel")
    min_samples_per_variant: int = Field(default=1000, alias="minSamplesPerVariant")
    promotion_delay_seconds: float = Field(default=24 * 3600.0, alias="promotionDelaySeconds")
    max_error_rate: Optional[float] = Field(default=None, alias="maxErrorRate")
    rollback_on_regression: bool = Field(default=True, alias="rollbackOnRegression")

    model_config = ConfigDict(populate_by_name=True)


class CreateExperimentRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    name: str
    variant_a_ref: str = Field(..., alias="variantARef")
    variant_b_ref: str = Field(..., alias="variantBRef")
    traffic_split: TrafficSplitModel = Field(default_factory=TrafficSplitModel, alias="trafficSplit")
    success_criteria: List[SuccessCriterionModel] = Field(..., alias="successCriteria")
    auto_promote: AutoPromoteModel = Field(default_factory=AutoPromoteModel, alias="autoPromote")

    model_config = ConfigDict(populate_by_name=True)

    def to_config(self) -> ExperimentConfig:
        """Build a draft config; field problems surface as ConfigurationError."""
        return ExperimentConfig(
            id=self.experiment_id,
            name=self.name,
            variant_a_ref=self.variant_a_ref,
            variant_b_ref=self.variant_b_ref,
            traffic_split=split_from_dict(self.traffic_split.model_dump(mode="json")),
            success_criteria=tuple(
                criterion_from_dict(c.model_dump(mode="json"), i)
                for i, c in enumerate(self.success_criteria)
            ),
            auto_promote=auto_promote_from_dict(self.auto_promote.model_dump(mode="json", exclude_none=True)),
        )


class UpdateConfigRequest(BaseModel):
    """Partial update; nested objects are merged, successCriteria replaces the list."""

    name: Optional[str] = None
    traffic_split: Optional[TrafficSplitModel] = Field(default=None, alias="trafficSplit")
    success_criteria: Optional[List[SuccessCriterionModel]] = Field(default=None, alias="successCriteria")
    auto_promote: Optional[AutoPromoteModel] = Field(default=None, alias="autoPromote")

    model_config = ConfigDict(populate_by_name=True)

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class AssignRequest(BaseModel):
    subject_key: str = Field(..., alias="subjectKey")
    attributes: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class RecordEventRequest(BaseModel):
    variant: Variant
    timestamp: Optional[float] = None
    success: bool
    latency_ms: float = Field(..., alias="latencyMs")
    cost_usd: float = Field(default=0.0, alias="costUsd")
    quality_score: Optional[float] = Field(default=None, alias="qualityScore")
    custom: Dict[str, float] = Field(default_factory=dict)
    event_id: Optional[str] = Field(default=None, alias="eventId")

    model_config = ConfigDict(populate_by_name=True)

    def to_outcome(self) -> Outcome:
        return Outcome(
            success=self.success,
            latency_ms=self.latency_ms,
            cost_usd=self.cost_usd,
            quality_score=self.quality_score,
            custom=dict(self.custom),
        )


class PromoteRequest(BaseModel):
    variant: Variant
