# services/stats.py
import math
from decimal import Decimal, ROUND_HALF_UP

BASIS_POINTS = 10000


def to_basis_points(numerator: int, denominator: int) -> int:
    """numerator / denominator as integer basis points, rounded half up. 0 when empty."""
    if denominator <= 0:
        return 0
    return int((Decimal(numerator) * BASIS_POINTS / Decimal(denominator)).quantize(Decimal(1), ROUND_HALF_UP))


def lift_percent(rate_bp: int, baseline_bp: int) -> float:
    """Signed relative lift of a rate over a baseline, one decimal place."""
    if baseline_bp <= 0:
        return 0.0
    lift = (Decimal(rate_bp - baseline_bp) * 100 / Decimal(baseline_bp)).quantize(Decimal("0.1"), ROUND_HALF_UP)
    return float(lift)


def confidence_score(sample_size: int, saturation_k: float, min_sample: int) -> int:
    """
    100 * (1 - e^(-n/k)), rounded, and 0 below the minimum sample.

    With k = 50 the 40 ("medium") band starts near 26 sends and the
    70 ("high") band at 60 sends.
    """
    if sample_size < min_sample or sample_size <= 0:
        return 0
    return min(100, round(100 * (1 - math.exp(-sample_size / saturation_k))))


def normal_cdf(z: float) -> float:
    return 0.5 * (1 + math.erf(z / math.sqrt(2)))


def two_proportion_confidence(
    control_conversions: int,
    control_sample: int,
    treatment_conversions: int,
    treatment_sample: int,
) -> float:
    """
    Two-tailed z-test for two proportions, as a confidence percentage
    (e.g. 95.0). Returns 0 when either sample is empty or the pooled
    variance is zero.
    """
    if control_sample == 0 or treatment_sample == 0:
        return 0.0

    p1 = control_conversions / control_sample
    p2 = treatment_conversions / treatment_sample
    pooled = (control_conversions + treatment_conversions) / (control_sample + treatment_sample)

    se = math.sqrt(pooled * (1 - pooled) * (1 / control_sample + 1 / treatment_sample))
    if se == 0:
        return 0.0

    z = abs(p2 - p1) / se
    confidence = (1 - 2 * (1 - normal_cdf(z))) * 100
    return round(max(0.0, min(100.0, confidence)), 2)
