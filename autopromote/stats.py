"""Significance testing for binary outcomes (success / error) between variants.

Normal CDF values come from math.erf / math.erfc. Critical values come from
Acklam's rational approximation of the inverse normal CDF (relative error
below 1.2e-9). Both are pure arithmetic, so results are identical run to run.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math
import sys

from .errors import InsufficientDataError, InvariantViolation

# Acklam's coefficients for the inverse normal CDF
_A = (-3.969683028665376e+01, 2.209460984245205e+02, -2.759285104469687e+02,
      1.383577518672690e+02, -3.066479806614716e+01, 2.506628277459239e+00)
_B = (-5.447609879822406e+01, 1.615858368580409e+02, -1.556989798598866e+02,
      6.680131188771972e+01, -1.328068155288572e+01)
_C = (-7.784894002430293e-03, -3.223964580411365e-01, -2.400758277161838e+00,
      -2.549732539343734e+00, 4.374664141464968e+00, 2.938163982698783e+00)
_D = (7.784695709041462e-03, 3.224671290700398e-01, 2.445134137142996e+00,
      3.754408661907416e+00)
_P_LOW = 0.02425

# Smallest p-value reported, so p stays in (0, 1]
MIN_P_VALUE = sys.float_info.min


def _normal_cdf(x: float) -> float:
    """
    Cumulative distribution function for a standard normal variable.
    Uses the error function from the math module (no external deps).
    """
    return 0.5 * (1 + math.erf(x / math.sqrt(2)))


def _normal_ppf(p: float) -> float:
    """Inverse standard normal CDF (Acklam's approximation)."""
    if not 0 < p < 1:
        raise ValueError(f"p must be in (0, 1), got {p}")
    if p < _P_LOW:
        q = math.sqrt(-2 * math.log(p))
        return (((((_C[0] * q + _C[1]) * q + _C[2]) * q + _C[3]) * q + _C[4]) * q + _C[5]) / \
               ((((_D[0] * q + _D[1]) * q + _D[2]) * q + _D[3]) * q + 1)
    if p > 1 - _P_LOW:
        q = math.sqrt(-2 * math.log(1 - p))
        return -(((((_C[0] * q + _C[1]) * q + _C[2]) * q + _C[3]) * q + _C[4]) * q + _C[5]) / \
                ((((_D[0] * q + _D[1]) * q + _D[2]) * q + _D[3]) * q + 1)
    q = p - 0.5
    r = q * q
    return (((((_A[0] * r + _A[1]) * r + _A[2]) * r + _A[3]) * r + _A[4]) * r + _A[5]) * q / \
           (((((_B[0] * r + _B[1]) * r + _B[2]) * r + _B[3]) * r + _B[4]) * r + 1)


def z_for_confidence(confidence_level: float) -> float:
    """Two-sided critical value, e.g. 0.95 -> 1.95996."""
    return _normal_ppf(1 - (1 - confidence_level) / 2)


def _z_test_proportions(
    conv_a: int,
    users_a: int,
    conv_b: int,
    users_b: int,
) -> Tuple[float, float]:
    """
    Two-proportion z-test (pooled) for variant B vs variant A.
    Returns (z, two-sided p-value).
    """
    p1 = conv_a / users_a
    p2 = conv_b / users_b
    p_pool = (conv_a + conv_b) / (users_a + users_b)

    # Standard error
    se = math.sqrt(p_pool * (1 - p_pool) * (1 / users_a + 1 / users_b))
    if se == 0:
        # pooled rate is 0 or 1, so both rates are identical
        return 0.0, 1.0

    z = (p2 - p1) / se

    # Two-sided p-value; erfc keeps precision far out in the tail
    p_value = math.erfc(abs(z) / math.sqrt(2))
    return z, min(1.0, max(MIN_P_VALUE, p_value))


def cohens_h(rate_a: float, rate_b: float) -> float:
    return 2 * (math.asin(math.sqrt(rate_a)) - math.asin(math.sqrt(rate_b)))


def classify_effect_size(h: float) -> str:
    size = abs(h)
    if size < 0.2:
        return "negligible"
    if size < 0.5:
        return "small"
    if size < 0.8:
        return "medium"
    return "large"


@dataclass(frozen=True)
class ConfidenceInterval:
    lower: float
    upper: float
    level: float


def confidence_interval(rate: float, n: int, confidence_level: float = 0.95) -> ConfidenceInterval:
    """rate ± z·sqrt(rate(1 − rate)/n), unclamped."""
    margin = z_for_confidence(confidence_level) * math.sqrt(rate * (1 - rate) / n)
    return ConfidenceInterval(rate - margin, rate + margin, confidence_level)


def statistical_power(
    rate_a: float, n_a: int, rate_b: float, n_b: int, confidence_level: float = 0.95
) -> float:
    """Probability of detecting the observed difference at these sample sizes."""
    alpha = 1 - confidence_level
    diff = abs(rate_b - rate_a)
    se = math.sqrt(rate_a * (1 - rate_a) / n_a + rate_b * (1 - rate_b) / n_b)
    if se == 0:
        return 1.0 if diff > 0 else alpha
    z_crit = z_for_confidence(confidence_level)
    return _normal_cdf(diff / se - z_crit) + _normal_cdf(-diff / se - z_crit)


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    confidence_level: float = 0.95,
    power: float = 0.8,
) -> int:
    """Samples per variant needed to detect an absolute lift of `minimum_detectable_effect`."""
    if minimum_detectable_effect == 0:
        raise ValueError("minimum_detectable_effect must be non-zero")
    p1 = baseline_rate
    p2 = min(max(baseline_rate + minimum_detectable_effect, 0.0), 1.0)
    p_bar = (p1 + p2) / 2
    z_alpha = z_for_confidence(confidence_level)
    z_beta = _normal_ppf(power)
    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return int(math.ceil(numerator / (p2 - p1) ** 2))


@dataclass(frozen=True)
class SignificanceResult:
    samples_a: int
    samples_b: int
    rate_a: float
    rate_b: float
    z_score: float
    p_value: float
    is_significant: bool
    confidence_level: float
    effect_size: float
    effect_magnitude: str
    ci_a: ConfidenceInterval
    ci_b: ConfidenceInterval
    power: float
    absolute_lift: float
    relative_lift: Optional[float]
    recommended_samples: Optional[int]

    @property
    def underpowered(self) -> bool:
        return self.power < 0.8

    def to_dict(self) -> dict:
        return {
            "samples_a": self.samples_a,
            "samples_b": self.samples_b,
            "rate_a": self.rate_a,
            "rate_b": self.rate_b,
            "z_score": self.z_score,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "confidence_level": self.confidence_level,
            "effect_size": self.effect_size,
            "effect_magnitude": self.effect_magnitude,
            "ci_a": [self.ci_a.lower, self.ci_a.upper],
            "ci_b": [self.ci_b.lower, self.ci_b.upper],
            "power": self.power,
            "absolute_lift": self.absolute_lift,
            "relative_lift": self.relative_lift,
            "recommended_samples": self.recommended_samples,
        }


def evaluate_significance(
    samples_a: int,
    successes_a: int,
    samples_b: int,
    successes_b: int,
    confidence_level: float = 0.95,
) -> SignificanceResult:
    """
    Compare B's success rate against A's.

    Raises InsufficientDataError when either variant has no samples, and
    InvariantViolation when successes exceed samples.
    """
    if samples_a <= 0 or samples_b <= 0:
        raise InsufficientDataError(
            f"need samples for both variants (A={samples_a}, B={samples_b})"
        )
    for name, n, k in (("A", samples_a, successes_a), ("B", samples_b, successes_b)):
        if k < 0 or k > n:
            raise InvariantViolation(f"variant {name}: {k} successes out of {n} samples")

    rate_a = successes_a / samples_a
    rate_b = successes_b / samples_b
    z, p_value = _z_test_proportions(successes_a, samples_a, successes_b, samples_b)
    h = cohens_h(rate_a, rate_b)
    lift = rate_b - rate_a

    recommended = None
    if lift != 0 and 0 < rate_a < 1:
        recommended = required_sample_size(rate_a, lift, confidence_level)

    return SignificanceResult(
        samples_a=samples_a,
        samples_b=samples_b,
        rate_a=rate_a,
        rate_b=rate_b,
        z_score=z,
        p_value=p_value,
        is_significant=p_value < (1 - confidence_level),
        confidence_level=confidence_level,
        effect_size=h,
        effect_magnitude=classify_effect_size(h),
        ci_a=confidence_interval(rate_a, samples_a, confidence_level),
        ci_b=confidence_interval(rate_b, samples_b, confidence_level),
        power=statistical_power(rate_a, samples_a, rate_b, samples_b, confidence_level),
        absolute_lift=lift,
        relative_lift=lift / rate_a if rate_a > 0 else None,
        recommended_samples=recommended,
    )
