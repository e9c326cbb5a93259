"""Weighted multi-metric composite scoring."""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from .aggregator import VariantAggregate
from .errors import ConfigurationError
from .experiment import Direction, Metric, SuccessCriterion


class Winner(str, Enum):
    VARIANT_A = "variantA"
    VARIANT_B = "variantB"
    TIE = "tie"


@dataclass(frozen=True)
class CriterionScore:
    criterion: SuccessCriterion
    actual: Optional[float]
    normalized: float
    met: bool

    @property
    def weighted(self) -> float:
        return self.normalized * self.criterion.weight


@dataclass(frozen=True)
class CompositeScore:
    score: float
    criteria: List[CriterionScore]

    @property
    def all_met(self) -> bool:
        return all(c.met for c in self.criteria)


def metric_value(aggregate: VariantAggregate, criterion: SuccessCriterion) -> Optional[float]:
    """Actual value of the criterion's metric, or None when there is no data."""
    if criterion.metric == Metric.LATENCY:
        return aggregate.latency_percentile(criterion.percentile)
    if criterion.metric == Metric.SUCCESS_RATE:
        return aggregate.success_rate
    if criterion.metric == Metric.COST:
        return aggregate.mean_cost
    if criterion.metric == Metric.QUALITY_SCORE:
        return aggregate.mean_quality_score
    if criterion.metric == Metric.CUSTOM:
        return aggregate.custom_mean(criterion.custom_name)
    raise ConfigurationError("metric", f"unsupported metric {criterion.metric!r}")


def normalize(criterion: SuccessCriterion, actual: Optional[float]) -> float:
    """
    Normalize `actual` against the criterion's threshold.

    Clamped at 0 but deliberately not capped at 1, so a variant that beats its
    threshold by a wide margin keeps earning credit.
    """
    if actual is None:
        return 0.0
    if criterion.threshold <= 0:
        raise ConfigurationError("threshold", "must be a positive number")
    if criterion.direction == Direction.LOWER_IS_BETTER:
        return max(0.0, (criterion.threshold - actual) / criterion.threshold)
    return max(0.0, actual / criterion.threshold)


def criterion_met(criterion: SuccessCriterion, actual: Optional[float]) -> bool:
    if actual is None:
        return False
    if criterion.direction == Direction.LOWER_IS_BETTER:
        return actual <= criterion.threshold
    return actual >= criterion.threshold


def score_criterion(aggregate: VariantAggregate, criterion: SuccessCriterion) -> CriterionScore:
    actual = metric_value(aggregate, criterion)
    return CriterionScore(
        criterion=criterion,
        actual=actual,
        normalized=normalize(criterion, actual),
        met=criterion_met(criterion, actual),
    )


def composite_score(aggregate: VariantAggregate, criteria: Sequence[SuccessCriterion]) -> CompositeScore:
    """Σ(normalized × weight) / Σ(weight) over all criteria."""
    total_weight = sum(c.weight for c in criteria)
    if total_weight <= 0:
        raise ConfigurationError("success_criteria", "weights sum to zero")
    scored = [score_criterion(aggregate, c) for c in criteria]
    return CompositeScore(
        score=sum(s.weighted for s in scored) / total_weight,
        criteria=scored,
    )


def determine_winner(score_a: float, score_b: float) -> Winner:
    """B wins only on a strictly higher score; exact equality is a tie."""
    if score_b > score_a:
        return Winner.VARIANT_B
    if score_a > score_b:
        return Winner.VARIANT_A
    return Winner.TIE
