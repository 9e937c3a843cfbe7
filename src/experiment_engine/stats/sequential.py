"""
Sequential analysis: simplified Sequential Probability Ratio Test (SPRT).

Compares a binomial model with one shared conversion rate (null) against
a model with each arm at its observed rate (alternative). The log-likelihood
ratio is signed by the direction of the observed difference, so a treatment
that is clearly worse than control drifts towards the futility bound.
"""

import math
from dataclasses import dataclass

from scipy.special import xlog1py, xlogy

from ..errors import ValidationError
from ..schema import SequentialDecision

MIN_OBSERVATIONS_PER_ARM = 50


@dataclass
class SequentialTestResult:
    decision: SequentialDecision
    log_likelihood_ratio: float
    upper_bound: float
    lower_bound: float

    @property
    def should_stop(self) -> bool:
        return self.decision != SequentialDecision.CONTINUE


def _binomial_log_likelihood(x: int, n: int, p: float) -> float:
    # xlogy treats 0 * log(0) as 0
    return float(xlogy(x, p) + xlog1py(n - x, -p))


def log_likelihood_ratio(x1: int, n1: int, x2: int, n2: int) -> float:
    """
    Signed log-likelihood ratio of observed rates vs a shared rate.

    Args:
        x1: Control conversions
        n1: Control participants
        x2: Treatment conversions
        n2: Treatment participants

    Returns:
        LLR >= 0 when treatment converts at least as well as control,
        the negated LLR otherwise. 0 when either arm is empty.
    """
    if n1 <= 0 or n2 <= 0:
        return 0.0
    x1 = min(x1, n1)
    x2 = min(x2, n2)
    p1 = x1 / n1
    p2 = x2 / n2
    p0 = (x1 + x2) / (n1 + n2)

    alternative = _binomial_log_likelihood(x1, n1, p1) + _binomial_log_likelihood(x2, n2, p2)
    null = _binomial_log_likelihood(x1, n1, p0) + _binomial_log_likelihood(x2, n2, p0)
    llr = max(alternative - null, 0.0)
    return llr if p2 >= p1 else -llr


def sequential_test(
    x1: int,
    n1: int,
    x2: int,
    n2: int,
    alpha: float = 0.05,
    beta: float = 0.2,
    min_observations: int = MIN_OBSERVATIONS_PER_ARM,
) -> SequentialTestResult:
    """
    Decide whether to continue or stop a two-arm experiment.

    Stops for efficacy when LLR >= log((1 - beta) / alpha), for futility when
    LLR <= log(beta / (1 - alpha)). Arms with fewer than ``min_observations``
    participants always continue.

    Args:
        x1: Control conversions
        n1: Control participants
        x2: Treatment conversions
        n2: Treatment participants
        alpha: Type I error rate
        beta: Type II error rate
        min_observations: Minimum participants per arm before any stop

    Returns:
        SequentialTestResult
    """
    if not (0 < alpha < 1 and 0 < beta < 1):
        raise ValidationError(f"alpha and beta must be within (0, 1), got {alpha}, {beta}")

    upper = math.log((1 - beta) / alpha)
    lower = math.log(beta / (1 - alpha))

    if n1 < min_observations or n2 < min_observations:
        return SequentialTestResult(SequentialDecision.CONTINUE, 0.0, upper, lower)

    llr = log_likelihood_ratio(x1, n1, x2, n2)
    if llr >= upper:
        decision = SequentialDecision.STOP_FOR_EFFICACY
    elif llr <= lower:
        decision = SequentialDecision.STOP_FOR_FUTILITY
    else:
        decision = SequentialDecision.CONTINUE
    return SequentialTestResult(decision, llr, upper, lower)
