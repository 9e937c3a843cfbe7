"""
Power analysis and MDE (Minimum Detectable Effect) calculator.

Required sample size, achieved power and detectable effect for the
two-proportion z-test. Effects are relative lifts over the baseline rate
(0.05 = +5%).
"""

import math

import numpy as np
from scipy import optimize, stats

from ..errors import ValidationError


def _check_probability(name: str, value: float) -> None:
    if not 0 < value < 1:
        raise ValidationError(f"{name} must be within (0, 1), got {value}")


def _treatment_rate(baseline: float, effect_relative: float) -> float:
    p2 = baseline * (1 + effect_relative)
    if not 0 < p2 < 1:
        raise ValidationError(
            f"baseline {baseline} with relative effect {effect_relative} "
            f"implies an invalid treatment rate {p2:.4f}"
        )
    return p2


def two_proportion_power(
    p1: float,
    p2: float,
    n1: float,
    n2: float,
    alpha: float = 0.05,
) -> float:
    """
    Power of the two-sided pooled two-proportion z-test.

    Args:
        p1: Control rate
        p2: Treatment rate
        n1: Control sample size
        n2: Treatment sample size
        alpha: Type I error rate

    Returns:
        Probability of rejecting H0 when the true rates are p1 and p2.
    """
    if n1 <= 0 or n2 <= 0:
        return 0.0
    z_alpha = stats.norm.ppf(1 - alpha / 2)
    p_bar = (n1 * p1 + n2 * p2) / (n1 + n2)
    se_null = math.sqrt(p_bar * (1 - p_bar) * (1 / n1 + 1 / n2))
    se_alt = math.sqrt(p1 * (1 - p1) / n1 + p2 * (1 - p2) / n2)
    effect = abs(p2 - p1)
    if se_alt == 0:
        return 1.0 if effect > z_alpha * se_null else 0.0

    power = (
        stats.norm.cdf((effect - z_alpha * se_null) / se_alt)
        + stats.norm.cdf((-effect - z_alpha * se_null) / se_alt)
    )
    return float(np.clip(power, 0, 1))


def sample_size(
    mde: float,
    confidence: float = 0.95,
    power: float = 0.8,
    baseline_rate: float = 0.05,
) -> int:
    """
    Required participants per arm for a two-proportion test.

    n = (z_{1-a/2} * sqrt(2 p(1-p)) + z_power * sqrt(p1(1-p1) + p2(1-p2)))^2 / (p2 - p1)^2
    with p the mean of p1 and p2.

    Args:
        mde: Minimum detectable effect as relative lift (0.05 = +5%)
        confidence: Confidence level (1 - alpha)
        power: Statistical power (1 - beta)
        baseline_rate: Control conversion rate

    Returns:
        Sample size per arm, rounded up
    """
    _check_probability("confidence", confidence)
    _check_probability("power", power)
    _check_probability("baseline_rate", baseline_rate)
    if mde == 0:
        raise ValidationError("mde must be non-zero")

    p1 = baseline_rate
    p2 = _treatment_rate(p1, mde)
    alpha = 1 - confidence

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_beta = stats.norm.ppf(power)

    p_pool = (p1 + p2) / 2
    se_null = math.sqrt(2 * p_pool * (1 - p_pool))
    se_alt = math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    effect = abs(p2 - p1)

    n_per_arm = ((z_alpha * se_null + z_beta * se_alt) / effect) ** 2
    return int(math.ceil(n_per_arm))


def power_proportion(
    baseline: float,
    effect_relative: float,
    n_per_arm: int,
    alpha: float = 0.05,
) -> float:
    """
    Achieved power for a given relative effect and per-arm sample size.

    Returns:
        Statistical power (0-1)
    """
    _check_probability("baseline", baseline)
    p2 = _treatment_rate(baseline, effect_relative)
    return two_proportion_power(baseline, p2, n_per_arm, n_per_arm, alpha)


def mde_proportion(
    baseline: float,
    n_per_arm: int,
    alpha: float = 0.05,
    power: float = 0.8,
) -> float:
    """
    Minimum detectable effect (relative lift) for a per-arm sample size.

    Solves power_proportion(baseline, mde, n_per_arm) == power for mde.

    Returns:
        MDE as relative change, capped at the largest lift keeping the
        treatment rate below 1.
    """
    _check_probability("baseline", baseline)
    _check_probability("power", power)
    if n_per_arm <= 0:
        return float("inf")

    upper = (1 - 1e-9) / baseline - 1
    lower = 1e-9

    def objective(effect: float) -> float:
        return power_proportion(baseline, effect, n_per_arm, alpha) - power

    if objective(upper) < 0:
        return float(upper)
    return float(optimize.brentq(objective, lower, upper, xtol=1e-8))
