import pytest

from autopromote.aggregator import VariantAggregate
from autopromote.errors import ExperimentStateError, InvariantViolation
from autopromote.experiment import (
    AutoPromoteConfig,
    CanaryStage,
    Direction,
    ExperimentStatus,
    Metric,
    SplitStrategy,
    SuccessCriterion,
    TrafficSplit,
    Variant,
)
from autopromote.promotion import (
    Action,
    MachineState,
    PromotionStateMachine,
    State,
    evaluate_gates,
    safety_violation,
)

from conftest import T0, make_config


def _aggregate(variant, requests, successes, **extra):
    return VariantAggregate(
        variant=variant,
        request_count=requests,
        success_count=successes,
        error_count=requests - successes,
        **extra,
    )


def _running(config=None):
    config = config or make_config()
    machine = PromotionStateMachine(config, MachineState())
    machine.start(T0)
    return machine


def _winning_b(config):
    return evaluate_gates(config, _aggregate(Variant.A, 1000, 900), _aggregate(Variant.B, 1000, 950))


def test_gates_all_met_for_textbook_data():
    evaluation = _winning_b(make_config())
    assert evaluation.is_significant
    assert evaluation.samples_met
    assert evaluation.all_criteria_met
    assert not evaluation.regression


def test_gates_not_met_without_enough_samples():
    config = make_config()
    evaluation = evaluate_gates(config, _aggregate(Variant.A, 500, 450), _aggregate(Variant.B, 500, 490))
    assert not evaluation.samples_met
    assert not evaluation.all_criteria_met
    assert any("need 1000 samples" in r for r in evaluation.reasons)


def test_gates_with_no_data_are_insufficient_not_failing():
    config = make_config()
    evaluation = evaluate_gates(config, _aggregate(Variant.A, 0, 0), _aggregate(Variant.B, 0, 0))
    assert evaluation.significance is None
    assert not evaluation.all_criteria_met
    assert any("insufficient data" in r for r in evaluation.reasons)


def test_promotion_waits_for_delay():
    machine = _running()
    evaluation = _winning_b(machine.config)

    first = machine.step(evaluation, T0 + 100)
    assert first.action == Action.CONTINUE
    assert machine.state.state == State.ELIGIBLE
    assert machine.state.criteria_first_met_at == T0 + 100

    early = machine.step(evaluation, T0 + 100 + 3599)
    assert early.action == Action.CONTINUE

    promoted = machine.step(evaluation, T0 + 100 + 3600)
    assert promoted.action == Action.PROMOTE_B
    assert machine.state.state == State.PROMOTED
    assert machine.config.status == ExperimentStatus.COMPLETED
    assert machine.config.winner == Variant.B
    assert machine.config.traffic_split.variant_b_percentage == 100.0
    assert machine.state.pending_split["instruction_id"] == "exp-1:B"


def test_regression_resets_promotion_clock():
    machine = _running()
    machine.step(_winning_b(machine.config), T0 + 100)

    tie = evaluate_gates(machine.config, _aggregate(Variant.A, 1000, 950), _aggregate(Variant.B, 1000, 950))
    decision = machine.step(tie, T0 + 200)
    assert decision.action == Action.CONTINUE
    assert machine.state.state == State.COLLECTING
    assert machine.state.criteria_first_met_at is None


def test_promotion_delay_restarts_after_criteria_lapse():
    machine = _running()
    winning = _winning_b(machine.config)
    tie = evaluate_gates(machine.config, _aggregate(Variant.A, 1000, 950), _aggregate(Variant.B, 1000, 950))

    machine.step(winning, T0 + 100)
    machine.step(tie, T0 + 200)
    machine.step(winning, T0 + 300)
    assert machine.state.criteria_first_met_at == T0 + 300

    # A full delay after the first true is not enough
    assert machine.step(winning, T0 + 100 + 3600).action == Action.CONTINUE
    assert machine.step(winning, T0 + 300 + 3599).action == Action.CONTINUE
    assert machine.config.winner is None

    assert machine.step(winning, T0 + 300 + 3600).action == Action.PROMOTE_B


def test_zero_delay_promotes_on_first_qualifying_cycle():
    config = make_config(auto_promote=AutoPromoteConfig(
        min_samples_per_variant=2000, promotion_delay_seconds=0.0, max_error_rate=0.10,
    ))
    machine = _running(config)
    evaluation = evaluate_gates(config, _aggregate(Variant.A, 10_000, 9_700), _aggregate(Variant.B, 10_000, 9_850))
    assert evaluation.all_criteria_met

    decision = machine.step(evaluation, T0 + 100)
    assert decision.action == Action.PROMOTE_B
    assert decision.criteria_first_met_at == T0 + 100
    assert machine.state.state == State.PROMOTED
    assert machine.config.winner == Variant.B


def test_no_rollback_when_b_has_significantly_better_success_rate():
    criteria = (
        SuccessCriterion(Metric.SUCCESS_RATE, Direction.HIGHER_IS_BETTER, threshold=0.90, weight=1.0),
        SuccessCriterion(Metric.LATENCY, Direction.LOWER_IS_BETTER, threshold=200.0, weight=5.0),
    )
    config = make_config(
        success_criteria=criteria,
        auto_promote=AutoPromoteConfig(min_samples_per_variant=1000, promotion_delay_seconds=0.0),
    )
    machine = _running(config)
    # A wins the composite on latency while B's success rate is significantly higher
    evaluation = evaluate_gates(
        config,
        _aggregate(Variant.A, 10_000, 9_000, latency_p95=50.0),
        _aggregate(Variant.B, 10_000, 9_500, latency_p95=150.0),
    )
    assert evaluation.winner.value == "variantA"
    assert evaluation.is_significant
    assert evaluation.significance.z_score > 0
    assert not evaluation.regression
    assert any("points away" in r for r in evaluation.reasons)

    decision = machine.step(evaluation, T0 + 100)
    assert decision.action == Action.CONTINUE
    assert machine.state.rollback_first_met_at is None
    assert machine.config.winner is None


def test_rollback_after_sustained_regression():
    machine = _running()
    worse_b = evaluate_gates(machine.config, _aggregate(Variant.A, 1000, 950), _aggregate(Variant.B, 1000, 900))
    assert worse_b.regression

    assert machine.step(worse_b, T0 + 100).action == Action.CONTINUE
    assert machine.state.rollback_first_met_at == T0 + 100
    decision = machine.step(worse_b, T0 + 3700)
    assert decision.action == Action.PROMOTE_A
    assert machine.state.state == State.ROLLED_BACK
    assert machine.config.winner == Variant.A
    assert machine.config.traffic_split.variant_b_percentage == 0.0


def test_rollback_disabled_keeps_collecting():
    config = make_config(auto_promote=AutoPromoteConfig(
        min_samples_per_variant=1000, promotion_delay_seconds=0.0, rollback_on_regression=False,
    ))
    machine = _running(config)
    worse_b = evaluate_gates(config, _aggregate(Variant.A, 1000, 950), _aggregate(Variant.B, 1000, 900))
    assert machine.step(worse_b, T0 + 100).action == Action.CONTINUE
    assert machine.state.state == State.COLLECTING


def test_disabled_auto_promote_requires_manual_review():
    config = make_config(auto_promote=AutoPromoteConfig(
        enabled=False, min_samples_per_variant=1000, promotion_delay_seconds=0.0,
    ))
    machine = _running(config)
    decision = machine.step(_winning_b(config), T0 + 100)
    assert decision.action == Action.REQUIRE_MANUAL_REVIEW
    assert machine.state.state == State.ELIGIBLE
    assert machine.config.winner is None


def test_safety_violation_pauses():
    assert safety_violation(_aggregate(Variant.B, 100, 80), 0.10) is not None
    assert safety_violation(_aggregate(Variant.B, 100, 95), 0.10) is None
    assert safety_violation(_aggregate(Variant.B, 0, 0), 0.10) is None

    machine = _running()
    reason = safety_violation(_aggregate(Variant.B, 100, 80), 0.10)
    decision = machine.step(_winning_b(machine.config), T0 + 100, safety_reason=reason)
    assert decision.action == Action.REQUIRE_MANUAL_REVIEW
    assert machine.state.state == State.PAUSED
    assert machine.config.status == ExperimentStatus.PAUSED


def test_paused_machine_does_not_transition():
    machine = _running()
    machine.pause()
    decision = machine.step(_winning_b(machine.config), T0 + 10_000)
    assert decision.action == Action.CONTINUE
    assert machine.state.state == State.PAUSED


def test_resume_resets_criteria_clock():
    machine = _running()
    machine.step(_winning_b(machine.config), T0 + 100)
    machine.pause()
    machine.resume(T0 + 200)
    assert machine.state.state == State.COLLECTING
    assert machine.state.criteria_first_met_at is None
    assert machine.config.status == ExperimentStatus.ACTIVE
    assert machine.state.safety_since == T0 + 200


def test_canary_advances_when_stage_has_enough_samples():
    split = TrafficSplit(
        strategy=SplitStrategy.CANARY,
        stage_schedule=(CanaryStage(10.0, min_samples=100), CanaryStage(50.0, min_samples=1000), CanaryStage(100.0)),
    )
    machine = _running(make_config(traffic_split=split))
    evaluation = evaluate_gates(machine.config, _aggregate(Variant.A, 50, 45), _aggregate(Variant.B, 50, 45))

    machine.step(evaluation, T0 + 100, stage_samples_b=99)
    assert machine.config.traffic_split.current_stage == 0

    decision = machine.step(evaluation, T0 + 200, stage_samples_b=100)
    assert machine.config.traffic_split.current_stage == 1
    assert machine.config.traffic_split.effective_b_percentage() == 50.0
    assert machine.state.stage_started_at == T0 + 200
    assert "canary advanced" in decision.reason


def test_canary_waits_for_min_duration():
    split = TrafficSplit(
        strategy=SplitStrategy.CANARY,
        stage_schedule=(CanaryStage(5.0, min_samples=10, min_duration_seconds=600), CanaryStage(100.0)),
    )
    machine = _running(make_config(traffic_split=split))
    assert not machine.advance_canary(50, T0 + 300)
    assert machine.advance_canary(50, T0 + 600)
    assert not machine.advance_canary(50, T0 + 10_000)


def test_canary_does_not_advance_on_safety_stop():
    split = TrafficSplit(strategy=SplitStrategy.CANARY, stage_schedule=(CanaryStage(10.0, min_samples=1), CanaryStage(100.0)))
    machine = _running(make_config(traffic_split=split))
    evaluation = _winning_b(machine.config)
    machine.step(evaluation, T0 + 100, safety_reason="error rate too high", stage_samples_b=500)
    assert machine.config.traffic_split.current_stage == 0


def test_declare_winner_is_idempotent_and_fixed():
    machine = _running()
    assert machine.declare_winner(Variant.B, T0 + 1)
    assert not machine.declare_winner(Variant.B, T0 + 2)
    with pytest.raises(InvariantViolation):
        machine.declare_winner(Variant.A, T0 + 3)


def test_force_promote_ignores_gates():
    machine = _running()
    decision = machine.force(Variant.B, T0 + 1)
    assert decision.action == Action.PROMOTE_B
    assert machine.state.state == State.PROMOTED
    with pytest.raises(ExperimentStateError):
        machine.force(Variant.A, T0 + 2)


def test_halt_requires_manual_review_until_reset():
    machine = _running()
    machine.halt("bucket counters inconsistent", T0 + 1)
    decision = machine.step(_winning_b(machine.config), T0 + 10_000)
    assert decision.action == Action.REQUIRE_MANUAL_REVIEW
    assert machine.config.winner is None

    machine.reset(T0 + 20_000)
    assert not machine.state.halted
    assert machine.state.aggregation_since == T0 + 20_000


def test_commands_rejected_in_wrong_state():
    machine = PromotionStateMachine(make_config(), MachineState())
    with pytest.raises(ExperimentStateError):
        machine.pause()
    with pytest.raises(ExperimentStateError):
        machine.force(Variant.B, T0)

    finished = _running()
    finished.force(Variant.B, T0 + 1)
    with pytest.raises(ExperimentStateError):
        finished.reset(T0 + 2)
    with pytest.raises(ExperimentStateError):
        finished.start(T0 + 3)


def test_machine_state_copy_is_independent():
    state = MachineState(pending_split={"instruction_id": "exp-1:B"})
    clone = state.copy()
    clone.pending_split["instruction_id"] = "changed"
    assert state.pending_split["instruction_id"] == "exp-1:B"
