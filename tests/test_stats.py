import pytest

from autopromote.errors import InsufficientDataError, InvariantViolation
from autopromote.stats import (
    classify_effect_size,
    cohens_h,
    confidence_interval,
    evaluate_significance,
    required_sample_size,
    statistical_power,
    z_for_confidence,
)


def test_critical_values_match_tables():
    assert z_for_confidence(0.95) == pytest.approx(1.959964, abs=1e-5)
    assert z_for_confidence(0.99) == pytest.approx(2.575829, abs=1e-5)
    assert z_for_confidence(0.90) == pytest.approx(1.644854, abs=1e-5)


def test_evaluate_significance_textbook_example():
    # 10% vs 15% conversion on 1000 users each
    result = evaluate_significance(1000, 100, 1000, 150, confidence_level=0.95)

    assert result.rate_a == pytest.approx(0.10, rel=1e-6)
    assert result.rate_b == pytest.approx(0.15, rel=1e-6)
    assert result.z_score == pytest.approx(3.3806, abs=1e-3)
    assert 0 < result.p_value < 0.001
    assert result.is_significant
    assert result.absolute_lift == pytest.approx(0.05)
    assert result.relative_lift == pytest.approx(0.5)
    assert result.effect_magnitude == "negligible"


def test_identical_rates_are_not_significant():
    result = evaluate_significance(500, 250, 500, 250)
    assert result.z_score == 0.0
    assert result.p_value == pytest.approx(1.0)
    assert not result.is_significant


def test_all_successes_on_both_sides():
    result = evaluate_significance(100, 100, 100, 100)
    assert result.p_value == 1.0
    assert not result.is_significant


def test_p_value_stays_positive_for_huge_effects():
    result = evaluate_significance(1_000_000, 1000, 1_000_000, 999_000)
    assert 0 < result.p_value <= 1


def test_zero_samples_is_insufficient_data():
    with pytest.raises(InsufficientDataError):
        evaluate_significance(0, 0, 100, 50)
    with pytest.raises(InsufficientDataError):
        evaluate_significance(100, 50, 0, 0)


def test_more_successes_than_samples_is_an_invariant_violation():
    with pytest.raises(InvariantViolation):
        evaluate_significance(10, 11, 10, 5)


def test_cohens_h_and_classification():
    assert cohens_h(0.5, 0.5) == 0.0
    assert cohens_h(0.10, 0.15) == pytest.approx(-0.1519, abs=1e-3)
    assert classify_effect_size(0.1) == "negligible"
    assert classify_effect_size(-0.3) == "small"
    assert classify_effect_size(0.6) == "medium"
    assert classify_effect_size(0.9) == "large"


def test_confidence_interval():
    ci = confidence_interval(0.5, 100, 0.95)
    assert ci.lower == pytest.approx(0.5 - 0.0980, abs=1e-3)
    assert ci.upper == pytest.approx(0.5 + 0.0980, abs=1e-3)


def test_power_grows_with_sample_size():
    small = statistical_power(0.10, 200, 0.15, 200)
    large = statistical_power(0.10, 5000, 0.15, 5000)
    assert 0 < small < large <= 1
    assert large > 0.99


def test_required_sample_size():
    n = required_sample_size(0.10, 0.05, confidence_level=0.95, power=0.8)
    assert 680 <= n <= 690
    with pytest.raises(ValueError):
        required_sample_size(0.10, 0.0)


def test_underpowered_result_is_flagged():
    result = evaluate_significance(100, 10, 100, 12)
    assert result.underpowered
    assert result.recommended_samples is not None
    assert result.to_dict()["recommended_samples"] == result.recommended_samples
