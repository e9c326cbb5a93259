"""Experiment configuration types, validation and (de)serialization."""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .config import SAFETY_ERROR_RATE_CEILING
from .errors import ConfigurationError


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Variant(str, Enum):
    A = "A"  # incumbent
    B = "B"  # challenger


class SplitStrategy(str, Enum):
    PERCENTAGE = "percentage"
    CANARY = "canary"
    GEOGRAPHIC = "geographic"
    SEGMENT = "segment"


class Metric(str, Enum):
    LATENCY = "latency"
    SUCCESS_RATE = "successRate"
    COST = "cost"
    QUALITY_SCORE = "qualityScore"
    CUSTOM = "custom"


class Direction(str, Enum):
    LOWER_IS_BETTER = "lowerIsBetter"
    HIGHER_IS_BETTER = "higherIsBetter"


ALLOWED_CONFIDENCE_LEVELS = (0.80, 0.90, 0.95, 0.99)
LATENCY_PERCENTILES = ("p50", "p95", "p99")

# Attribute consulted by geographic / segment routing when none is configured
DEFAULT_TARGET_ATTRIBUTE = {
    SplitStrategy.GEOGRAPHIC: "region",
    SplitStrategy.SEGMENT: "segment",
}


@dataclass(frozen=True)
class CanaryStage:
    percentage: float
    min_samples: Optional[int] = None
    min_duration_seconds: Optional[float] = None


@dataclass(frozen=True)
class TrafficSplit:
    strategy: SplitStrategy = SplitStrategy.PERCENTAGE
    variant_b_percentage: float = 50.0
    # None means "everything that is not B goes to A"
    variant_a_percentage: Optional[float] = None
    stage_schedule: Tuple[CanaryStage, ...] = ()
    current_stage: int = 0
    target_attribute: Optional[str] = None
    target_values: FrozenSet[str] = frozenset()

    def effective_b_percentage(self) -> float:
        """Percentage of traffic routed to B right now."""
        if self.strategy == SplitStrategy.CANARY:
            return self.stage_schedule[self.current_stage].percentage
        return self.variant_b_percentage

    def effective_a_percentage(self) -> float:
        if self.strategy == SplitStrategy.CANARY or self.variant_a_percentage is None:
            return 100.0 - self.effective_b_percentage()
        return self.variant_a_percentage

    def attribute_name(self) -> Optional[str]:
        return self.target_attribute or DEFAULT_TARGET_ATTRIBUTE.get(self.strategy)

    @property
    def current_canary_stage(self) -> Optional[CanaryStage]:
        if self.strategy != SplitStrategy.CANARY:
            return None
        return self.stage_schedule[self.current_stage]

    @property
    def has_next_stage(self) -> bool:
        return (
            self.strategy == SplitStrategy.CANARY
            and self.current_stage + 1 < len(self.stage_schedule)
        )


@dataclass(frozen=True)
class SuccessCriterion:
    metric: Metric
    direction: Direction
    threshold: float
    weight: float = 1.0
    custom_name: Optional[str] = None
    percentile: str = "p95"

    @property
    def label(self) -> str:
        if self.metric == Metric.CUSTOM:
            return f"custom:{self.custom_name}"
        if self.metric == Metric.LATENCY:
            return f"latency:{self.percentile}"
        return self.metric.value


@dataclass(frozen=True)
class AutoPromoteConfig:
    enabled: bool = True
    confidence_level: float = 0.95
    min_samples_per_variant: int = 1000
    promotion_delay_seconds: float = 24 * 3600.0
    max_error_rate: float = SAFETY_ERROR_RATE_CEILING
    rollback_on_regression: bool = True


@dataclass(frozen=True)
class ExperimentConfig:
    id: str
    name: str
    variant_a_ref: str
    variant_b_ref: str
    traffic_split: TrafficSplit = field(default_factory=TrafficSplit)
    success_criteria: Tuple[SuccessCriterion, ...] = ()
    auto_promote: AutoPromoteConfig = field(default_factory=AutoPromoteConfig)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    winner: Optional[Variant] = None
    created_at: float = field(default_factory=time.time)


def _check_percentage(field_name: str, value: float) -> None:
    if value is None or not 0 <= value <= 100:
        raise ConfigurationError(field_name, f"must be between 0 and 100, got {value}")


def validate_traffic_split(split: TrafficSplit) -> None:
    _check_percentage("traffic_split.variant_b_percentage", split.variant_b_percentage)
    if split.variant_a_percentage is not None:
        _check_percentage("traffic_split.variant_a_percentage", split.variant_a_percentage)
        if split.variant_a_percentage + split.variant_b_percentage > 100:
            raise ConfigurationError(
                "traffic_split",
                "variant_a_percentage + variant_b_percentage must not exceed 100",
            )

    if split.strategy == SplitStrategy.CANARY:
        if not split.stage_schedule:
            raise ConfigurationError(
                "traffic_split.stage_schedule", "canary strategy needs at least one stage"
            )
        for i, stage in enumerate(split.stage_schedule):
            _check_percentage(f"traffic_split.stage_schedule[{i}].percentage", stage.percentage)
            if stage.min_samples is not None and stage.min_samples < 0:
                raise ConfigurationError(
                    f"traffic_split.stage_schedule[{i}].min_samples", "must not be negative"
                )
            if stage.min_duration_seconds is not None and stage.min_duration_seconds < 0:
                raise ConfigurationError(
                    f"traffic_split.stage_schedule[{i}].min_duration_seconds",
                    "must not be negative",
                )
        if not 0 <= split.current_stage < len(split.stage_schedule):
            raise ConfigurationError(
                "traffic_split.current_stage",
                f"must index into a schedule of {len(split.stage_schedule)} stages",
            )

    if split.strategy in (SplitStrategy.GEOGRAPHIC, SplitStrategy.SEGMENT):
        if not split.target_values:
            raise ConfigurationError(
                "traffic_split.target_values",
                f"{split.strategy.value} strategy needs at least one target value",
            )


def validate_criteria(criteria: Tuple[SuccessCriterion, ...]) -> None:
    if not criteria:
        raise ConfigurationError("success_criteria", "at least one criterion is required")

    for i, criterion in enumerate(criteria):
        prefix = f"success_criteria[{i}]"
        if criterion.threshold is None or criterion.threshold <= 0:
            raise ConfigurationError(f"{prefix}.threshold", "must be a positive number")
        if criterion.weight is None or criterion.weight < 0:
            raise ConfigurationError(f"{prefix}.weight", "must not be negative")
        if criterion.metric == Metric.CUSTOM and not criterion.custom_name:
            raise ConfigurationError(f"{prefix}.custom_name", "custom metrics need a name")
        if criterion.metric == Metric.LATENCY and criterion.percentile not in LATENCY_PERCENTILES:
            raise ConfigurationError(
                f"{prefix}.percentile", f"must be one of {', '.join(LATENCY_PERCENTILES)}"
            )

    if sum(c.weight for c in criteria) <= 0:
        raise ConfigurationError("success_criteria", "weights must not all be zero")


def validate_auto_promote(auto: AutoPromoteConfig) -> None:
    if not any(abs(auto.confidence_level - level) < 1e-9 for level in ALLOWED_CONFIDENCE_LEVELS):
        raise ConfigurationError(
            "auto_promote.confidence_level",
            f"must be one of {', '.join(str(c) for c in ALLOWED_CONFIDENCE_LEVELS)}",
        )
    if not isinstance(auto.min_samples_per_variant, int) or auto.min_samples_per_variant <= 0:
        raise ConfigurationError("auto_promote.min_samples_per_variant", "must be a positive integer")
    if auto.promotion_delay_seconds is None or auto.promotion_delay_seconds < 0:
        raise ConfigurationError("auto_promote.promotion_delay_seconds", "must not be negative")
    if not 0 < auto.max_error_rate <= 1:
        raise ConfigurationError("auto_promote.max_error_rate", "must be in (0, 1]")


def validate_config(config: ExperimentConfig) -> None:
    """Raise ConfigurationError naming the first offending field."""
    if not config.id:
        raise ConfigurationError("id", "must not be empty")
    if not config.name:
        raise ConfigurationError("name", "must not be empty")
    if not config.variant_a_ref:
        raise ConfigurationError("variant_a_ref", "must not be empty")
    if not config.variant_b_ref:
        raise ConfigurationError("variant_b_ref", "must not be empty")
    validate_traffic_split(config.traffic_split)
    validate_criteria(config.success_criteria)
    validate_auto_promote(config.auto_promote)
    if config.status == ExperimentStatus.COMPLETED and config.winner is None:
        raise ConfigurationError("winner", "a completed experiment must have a winner")


def with_split_percentage(config: ExperimentConfig, b_percentage: float) -> ExperimentConfig:
    """Rewrite the split so B receives exactly `b_percentage` of traffic."""
    split = TrafficSplit(strategy=SplitStrategy.PERCENTAGE, variant_b_percentage=b_percentage)
    return replace(config, traffic_split=split)


# --- serialization -----------------------------------------------------------


def split_to_dict(split: TrafficSplit) -> Dict[str, Any]:
    return {
        "strategy": split.strategy.value,
        "variant_b_percentage": split.variant_b_percentage,
        "variant_a_percentage": split.variant_a_percentage,
        "stage_schedule": [
            {
                "percentage": s.percentage,
                "min_samples": s.min_samples,
                "min_duration_seconds": s.min_duration_seconds,
            }
            for s in split.stage_schedule
        ],
        "current_stage": split.current_stage,
        "target_attribute": split.target_attribute,
        "target_values": sorted(split.target_values),
    }


def split_from_dict(data: Dict[str, Any]) -> TrafficSplit:
    try:
        strategy = SplitStrategy(data.get("strategy", SplitStrategy.PERCENTAGE.value))
    except ValueError:
        raise ConfigurationError("traffic_split.strategy", f"unknown strategy {data.get('strategy')!r}")
    return TrafficSplit(
        strategy=strategy,
        variant_b_percentage=data.get("variant_b_percentage", 50.0),
        variant_a_percentage=data.get("variant_a_percentage"),
        stage_schedule=tuple(
            CanaryStage(
                percentage=s["percentage"],
                min_samples=s.get("min_samples"),
                min_duration_seconds=s.get("min_duration_seconds"),
            )
            for s in data.get("stage_schedule") or []
        ),
        current_stage=data.get("current_stage", 0),
        target_attribute=data.get("target_attribute"),
        target_values=frozenset(data.get("target_values") or []),
    )


def criterion_to_dict(criterion: SuccessCriterion) -> Dict[str, Any]:
    return {
        "metric": criterion.metric.value,
        "direction": criterion.direction.value,
        "threshold": criterion.threshold,
        "weight": criterion.weight,
        "custom_name": criterion.custom_name,
        "percentile": criterion.percentile,
    }


def criterion_from_dict(data: Dict[str, Any], index: int = 0) -> SuccessCriterion:
    try:
        metric = Metric(data["metric"])
    except (KeyError, ValueError):
        raise ConfigurationError(f"success_criteria[{index}].metric", f"unknown metric {data.get('metric')!r}")
    try:
        direction = Direction(data["direction"])
    except (KeyError, ValueError):
        raise ConfigurationError(
            f"success_criteria[{index}].direction", f"unknown direction {data.get('direction')!r}"
        )
    return SuccessCriterion(
        metric=metric,
        direction=direction,
        threshold=data.get("threshold"),
        weight=data.get("weight", 1.0),
        custom_name=data.get("custom_name"),
        percentile=data.get("percentile") or "p95",
    )


def auto_promote_to_dict(auto: AutoPromoteConfig) -> Dict[str, Any]:
    return {
        "enabled": auto.enabled,
        "confidence_level": auto.confidence_level,
        "min_samples_per_variant": auto.min_samples_per_variant,
        "promotion_delay_seconds": auto.promotion_delay_seconds,
        "max_error_rate": auto.max_error_rate,
        "rollback_on_regression": auto.rollback_on_regression,
    }


def auto_promote_from_dict(data: Dict[str, Any]) -> AutoPromoteConfig:
    defaults = AutoPromoteConfig()
    return AutoPromoteConfig(
        enabled=data.get("enabled", defaults.enabled),
        confidence_level=data.get("confidence_level", defaults.confidence_level),
        min_samples_per_variant=data.get("min_samples_per_variant", defaults.min_samples_per_variant),
        promotion_delay_seconds=data.get("promotion_delay_seconds", defaults.promotion_delay_seconds),
        max_error_rate=data.get("max_error_rate", defaults.max_error_rate),
        rollback_on_regression=data.get("rollback_on_regression", defaults.rollback_on_regression),
    )


def config_to_dict(config: ExperimentConfig) -> Dict[str, Any]:
    """The JSON-able parts of a config (the rest lives in plain columns)."""
    return {
        "traffic_split": split_to_dict(config.traffic_split),
        "success_criteria": [criterion_to_dict(c) for c in config.success_criteria],
        "auto_promote": auto_promote_to_dict(config.auto_promote),
    }


def apply_patch(config: ExperimentConfig, patch: Dict[str, Any]) -> ExperimentConfig:
    """Return a new, validated config with `patch` applied.

    Only name, traffic_split, success_criteria and auto_promote may change;
    identity, references, status and winner are owned by the engine.
    """
    allowed = {"name", "traffic_split", "success_criteria", "auto_promote"}
    unknown = set(patch) - allowed
    if unknown:
        raise ConfigurationError(sorted(unknown)[0], "field cannot be updated")

    changes: Dict[str, Any] = {}
    if "name" in patch:
        changes["name"] = patch["name"]
    if "traffic_split" in patch:
        merged = split_to_dict(config.traffic_split)
        merged.update(patch["traffic_split"])
        changes["traffic_split"] = split_from_dict(merged)
    if "success_criteria" in patch:
        changes["success_criteria"] = tuple(
            criterion_from_dict(c, i) for i, c in enumerate(patch["success_criteria"])
        )
    if "auto_promote" in patch:
        merged = auto_promote_to_dict(config.auto_promote)
        merged.update(patch["auto_promote"])
        changes["auto_promote"] = auto_promote_from_dict(merged)

    updated = replace(config, **changes)
    validate_config(updated)
    return updated
