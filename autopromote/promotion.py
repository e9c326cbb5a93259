"""Promotion decision state machine.

    collecting -> eligible -> promoted
    collecting -> rolledBack
    any non-terminal state <-> paused

`promoted` and `rolledBack` are terminal; the winner is fixed from then on.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

from .aggregator import VariantAggregate
from .errors import ExperimentStateError, InsufficientDataError, InvariantViolation
from .experiment import ExperimentConfig, ExperimentStatus, Variant, with_split_percentage
from .scoring import CompositeScore, Winner, composite_score, determine_winner
from .stats import SignificanceResult, evaluate_significance

logger = logging.getLogger(__name__)


class State(str, Enum):
    COLLECTING = "collecting"
    ELIGIBLE = "eligible"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolledBack"
    PAUSED = "paused"


TERMINAL_STATES = (State.PROMOTED, State.ROLLED_BACK)


class Action(str, Enum):
    CONTINUE = "continue"
    PROMOTE_B = "promoteB"
    PROMOTE_A = "promoteA"
    REQUIRE_MANUAL_REVIEW = "requireManualReview"


@dataclass
class MachineState:
    state: State = State.COLLECTING
    criteria_first_met_at: Optional[float] = None
    rollback_first_met_at: Optional[float] = None
    stage_started_at: Optional[float] = None
    halted: bool = False
    halt_reason: Optional[str] = None
    aggregation_since: Optional[float] = None
    # Safety checks only look at traffic from here (last cycle, resume or reset)
    safety_since: Optional[float] = None
    pending_split: Optional[dict] = None

    def copy(self) -> "MachineState":
        return replace(self, pending_split=dict(self.pending_split) if self.pending_split else None)


@dataclass(frozen=True)
class PromotionDecision:
    timestamp: float
    variant_a_score: Optional[float]
    variant_b_score: Optional[float]
    p_value: Optional[float]
    is_significant: bool
    samples_a: int
    samples_b: int
    criteria_first_met_at: Optional[float]
    action: Action
    state: State
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "variant_a_score": self.variant_a_score,
            "variant_b_score": self.variant_b_score,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "samples_a": self.samples_a,
            "samples_b": self.samples_b,
            "criteria_first_met_at": self.criteria_first_met_at,
            "action": self.action.value,
            "state": self.state.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Evaluation:
    """Scores, significance and gate results for one cycle."""

    score_a: CompositeScore
    score_b: CompositeScore
    winner: Winner
    significance: Optional[SignificanceResult]
    samples_a: int
    samples_b: int
    samples_met: bool
    criteria_met: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def is_significant(self) -> bool:
        return self.significance is not None and self.significance.is_significant

    @property
    def all_criteria_met(self) -> bool:
        return (
            self.criteria_met
            and self.winner == Winner.VARIANT_B
            and self.samples_met
            and self.is_significant
            and self.significance.z_score > 0
        )

    @property
    def regression(self) -> bool:
        """A is the clear winner and B's success rate is significantly lower."""
        return (
            self.winner == Winner.VARIANT_A
            and self.samples_met
            and self.is_significant
            and self.significance.z_score < 0
        )


def evaluate_gates(
    config: ExperimentConfig, aggregate_a: VariantAggregate, aggregate_b: VariantAggregate
) -> Evaluation:
    criteria = config.success_criteria
    score_a = composite_score(aggregate_a, criteria)
    score_b = composite_score(aggregate_b, criteria)
    winner = determine_winner(score_a.score, score_b.score)

    reasons = []
    significance = None
    try:
        significance = evaluate_significance(
            aggregate_a.request_count,
            aggregate_a.success_count,
            aggregate_b.request_count,
            aggregate_b.success_count,
            config.auto_promote.confidence_level,
        )
    except InsufficientDataError as exc:
        reasons.append(f"insufficient data: {exc}")

    min_samples = config.auto_promote.min_samples_per_variant
    samples_met = aggregate_a.request_count >= min_samples and aggregate_b.request_count >= min_samples
    if not samples_met:
        reasons.append(
            f"need {min_samples} samples per variant "
            f"(A={aggregate_a.request_count}, B={aggregate_b.request_count})"
        )
    if significance is not None and not significance.is_significant:
        reasons.append(f"not significant (p={significance.p_value:.4g})")
    elif significance is not None and winner != Winner.TIE:
        if (significance.z_score > 0) != (winner == Winner.VARIANT_B):
            reasons.append(f"success rate difference points away from composite winner {winner.value}")
    for scored in score_b.criteria:
        if not scored.met:
            reasons.append(f"variant B misses {scored.criterion.label} threshold")
    if winner != Winner.VARIANT_B:
        reasons.append(f"composite winner is {winner.value}")

    return Evaluation(
        score_a=score_a,
        score_b=score_b,
        winner=winner,
        significance=significance,
        samples_a=aggregate_a.request_count,
        samples_b=aggregate_b.request_count,
        samples_met=samples_met,
        criteria_met=score_b.all_met,
        reasons=reasons,
    )


def safety_violation(aggregate_b: VariantAggregate, ceiling: float) -> Optional[str]:
    """Reason string when B's error rate is above the hard ceiling."""
    rate = aggregate_b.error_rate
    if rate is not None and rate > ceiling:
        return f"variant B error rate {rate:.2%} exceeds ceiling {ceiling:.2%}"
    return None


class PromotionStateMachine:
    """Applies one evaluation cycle or command to a config + machine state pair.

    Works on the objects it is given; callers persist `config` and `state`
    afterwards and keep the old ones if persisting fails.
    """

    def __init__(self, config: ExperimentConfig, state: MachineState):
        self.config = config
        self.state = state

    @property
    def is_terminal(self) -> bool:
        return self.state.state in TERMINAL_STATES

    @property
    def evaluable(self) -> bool:
        return (
            self.config.status == ExperimentStatus.ACTIVE
            and self.state.state in (State.COLLECTING, State.ELIGIBLE)
        )

    def _decision(self, now: float, action: Action, reason: str,
                  evaluation: Optional[Evaluation] = None) -> PromotionDecision:
        return PromotionDecision(
            timestamp=now,
            variant_a_score=evaluation.score_a.score if evaluation else None,
            variant_b_score=evaluation.score_b.score if evaluation else None,
            p_value=evaluation.significance.p_value if evaluation and evaluation.significance else None,
            is_significant=evaluation.is_significant if evaluation else False,
            samples_a=evaluation.samples_a if evaluation else 0,
            samples_b=evaluation.samples_b if evaluation else 0,
            criteria_first_met_at=self.state.criteria_first_met_at,
            action=action,
            state=self.state.state,
            reason=reason,
        )

    # --- evaluation cycle ----------------------------------------------------

    def step(
        self,
        evaluation: Evaluation,
        now: float,
        safety_reason: Optional[str] = None,
        stage_samples_b: Optional[int] = None,
    ) -> PromotionDecision:
        if self.state.halted:
            return self._decision(now, Action.REQUIRE_MANUAL_REVIEW,
                                  f"halted: {self.state.halt_reason}", evaluation)
        if not self.evaluable:
            return self._decision(now, Action.CONTINUE,
                                  f"not evaluating while {self.state.state.value}", evaluation)

        self.state.safety_since = now
        if safety_reason:
            self._pause()
            logger.warning("Safety stop for experiment %s: %s", self.config.id, safety_reason)
            return self._decision(now, Action.REQUIRE_MANUAL_REVIEW, f"safety stop: {safety_reason}", evaluation)

        notes = []
        if stage_samples_b is not None and self.advance_canary(stage_samples_b, now):
            notes.append(f"canary advanced to stage {self.config.traffic_split.current_stage}")

        auto = self.config.auto_promote
        if evaluation.all_criteria_met:
            self.state.rollback_first_met_at = None
            if self.state.criteria_first_met_at is None:
                self.state.criteria_first_met_at = now
                logger.info("Experiment %s: all criteria met, promotion clock started", self.config.id)
            self.state.state = State.ELIGIBLE
            if not auto.enabled:
                action, reason = Action.REQUIRE_MANUAL_REVIEW, "criteria met; auto-promotion disabled"
            elif now - self.state.criteria_first_met_at >= auto.promotion_delay_seconds:
                self.declare_winner(Variant.B, now)
                action, reason = Action.PROMOTE_B, "all criteria met for the promotion delay"
            else:
                remaining = auto.promotion_delay_seconds - (now - self.state.criteria_first_met_at)
                action, reason = Action.CONTINUE, f"criteria met; {remaining:.0f}s of promotion delay left"
        else:
            if self.state.criteria_first_met_at is not None:
                logger.info("Experiment %s: criteria no longer met, promotion clock reset", self.config.id)
            self.state.criteria_first_met_at = None
            self.state.state = State.COLLECTING
            action, reason = Action.CONTINUE, "; ".join(evaluation.reasons)

            if auto.enabled and auto.rollback_on_regression and evaluation.regression:
                if self.state.rollback_first_met_at is None:
                    self.state.rollback_first_met_at = now
                if now - self.state.rollback_first_met_at >= auto.promotion_delay_seconds:
                    self.declare_winner(Variant.A, now)
                    action, reason = Action.PROMOTE_A, "variant A significantly better; rolled back"
                else:
                    reason = "variant A significantly better; waiting out rollback delay"
            else:
                self.state.rollback_first_met_at = None

        if notes:
            reason = "; ".join(notes + [reason]) if reason else notes[0]
        return self._decision(now, action, reason, evaluation)

    def advance_canary(self, stage_samples_b: int, now: float) -> bool:
        split = self.config.traffic_split
        if not split.has_next_stage:
            return False
        stage = split.current_canary_stage
        if stage.min_samples is not None and stage_samples_b < stage.min_samples:
            return False
        started = self.state.stage_started_at
        if stage.min_duration_seconds is not None and (started is None or now - started < stage.min_duration_seconds):
            return False
        self.config = replace(
            self.config, traffic_split=replace(split, current_stage=split.current_stage + 1)
        )
        self.state.stage_started_at = now
        logger.info(
            "Experiment %s: canary stage %d -> %d (%.1f%% to B)",
            self.config.id, split.current_stage, split.current_stage + 1,
            self.config.traffic_split.effective_b_percentage(),
        )
        return True

    # --- transitions ---------------------------------------------------------

    def declare_winner(self, variant: Variant, now: float) -> bool:
        """Set the winner and the final split. Returns False when already applied."""
        if self.config.winner is not None:
            if self.config.winner == variant:
                return False
            raise InvariantViolation(
                f"experiment {self.config.id} already has winner {self.config.winner.value}"
            )
        b_percentage = 100.0 if variant == Variant.B else 0.0
        self.config = replace(
            with_split_percentage(self.config, b_percentage),
            status=ExperimentStatus.COMPLETED,
            winner=variant,
        )
        self.state.state = State.PROMOTED if variant == Variant.B else State.ROLLED_BACK
        self.state.pending_split = {
            "instruction_id": f"{self.config.id}:{variant.value}",
            "experiment_id": self.config.id,
            "winner": variant.value,
            "variant_ref": self.config.variant_b_ref if variant == Variant.B else self.config.variant_a_ref,
            "variant_b_percentage": b_percentage,
            "issued_at": now,
        }
        logger.info("Experiment %s: %s -> winner %s", self.config.id, self.state.state.value, variant.value)
        return True

    def _pause(self) -> None:
        self.state.state = State.PAUSED
        self.config = replace(self.config, status=ExperimentStatus.PAUSED)

    def start(self, now: float) -> bool:
        if self.config.status != ExperimentStatus.DRAFT:
            if self.config.status == ExperimentStatus.ACTIVE:
                return False
            raise ExperimentStateError(self.config.id, "only draft experiments can be started",
                                       self.state.state.value)
        self.config = replace(self.config, status=ExperimentStatus.ACTIVE)
        self.state.state = State.COLLECTING
        self.state.aggregation_since = now
        self.state.safety_since = now
        self.state.stage_started_at = now
        return True

    def pause(self) -> bool:
        if self.state.state == State.PAUSED:
            return False
        if self.is_terminal or self.config.status == ExperimentStatus.DRAFT:
            raise ExperimentStateError(self.config.id, "cannot pause", self.state.state.value)
        self._pause()
        return True

    def resume(self, now: float) -> bool:
        if self.state.state != State.PAUSED:
            if self.config.status == ExperimentStatus.ACTIVE:
                return False
            raise ExperimentStateError(self.config.id, "only paused experiments can be resumed",
                                       self.state.state.value)
        self.state.state = State.COLLECTING
        self.state.criteria_first_met_at = None
        self.state.rollback_first_met_at = None
        self.state.safety_since = now
        self.config = replace(self.config, status=ExperimentStatus.ACTIVE)
        return True

    def force(self, variant: Variant, now: float) -> PromotionDecision:
        """Operator override: promote or roll back immediately, ignoring gates."""
        if self.config.status == ExperimentStatus.DRAFT:
            raise ExperimentStateError(self.config.id, "experiment has not started", self.state.state.value)
        if self.is_terminal and self.config.winner != variant:
            raise ExperimentStateError(
                self.config.id,
                f"winner already decided ({self.config.winner.value})",
                self.state.state.value,
            )
        applied = self.declare_winner(variant, now)
        action = Action.PROMOTE_B if variant == Variant.B else Action.PROMOTE_A
        reason = "manual override" if applied else "manual override (already applied)"
        return self._decision(now, action, reason)

    def reset(self, now: float) -> None:
        """Restart aggregation and clocks from `now`; clears a halt."""
        if self.is_terminal:
            raise ExperimentStateError(self.config.id, "cannot reset a finished experiment",
                                       self.state.state.value)
        self.state.aggregation_since = now
        self.state.safety_since = now
        self.state.stage_started_at = now
        self.state.criteria_first_met_at = None
        self.state.rollback_first_met_at = None
        self.state.halted = False
        self.state.halt_reason = None
        if self.state.state == State.ELIGIBLE:
            self.state.state = State.COLLECTING

    def halt(self, reason: str, now: float) -> PromotionDecision:
        self.state.halted = True
        self.state.halt_reason = reason
        logger.error("Experiment %s halted: %s", self.config.id, reason)
        return self._decision(now, Action.REQUIRE_MANUAL_REVIEW, f"halted: {reason}")
