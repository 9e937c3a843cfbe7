"""
Bayesian Beta-Binomial inference for conversion rates.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import stats

from ..errors import ValidationError
from ..schema import ConfidenceInterval

MIN_DRAWS = 10000


@dataclass
class BetaPosterior:
    """Beta(alpha, beta) posterior over a conversion rate."""
    alpha: float
    beta: float

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def variance(self) -> float:
        total = self.alpha + self.beta
        return (self.alpha * self.beta) / (total ** 2 * (total + 1))

    def credible_interval(self, level: float = 0.95) -> ConfidenceInterval:
        """Equal-tailed credible interval from the Beta quantiles."""
        tail = (1 - level) / 2
        dist = stats.beta(self.alpha, self.beta)
        return ConfidenceInterval(
            lower=float(dist.ppf(tail)),
            upper=float(dist.ppf(1 - tail)),
            confidence_level=level,
        )

    def sample(self, size: int, rng: np.random.Generator) -> np.ndarray:
        return rng.beta(self.alpha, self.beta, size=size)


def bayesian_posterior(
    conversions: int,
    participants: int,
    prior_alpha: float = 1.0,
    prior_beta: float = 1.0,
) -> BetaPosterior:
    """
    Conjugate update: Beta(prior_alpha + x, prior_beta + n - x).

    Conversions above the participant count are clipped so the posterior
    stays proper.
    """
    if prior_alpha <= 0 or prior_beta <= 0:
        raise ValidationError("Prior parameters must be positive")
    if conversions < 0 or participants < 0:
        raise ValidationError(
            f"Counts must be non-negative, got {conversions}/{participants}"
        )
    conversions = min(conversions, participants)
    return BetaPosterior(
        alpha=prior_alpha + conversions,
        beta=prior_beta + participants - conversions,
    )


def probability_treatment_better(
    treatment: BetaPosterior,
    control: BetaPosterior,
    draws: int = MIN_DRAWS,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> float:
    """
    Monte-Carlo estimate of P(treatment rate > control rate).

    Args:
        treatment: Treatment posterior
        control: Control posterior
        draws: Number of paired draws (at least 10,000)
        seed: Seed for a fresh generator when ``rng`` is not given
        rng: NumPy generator to draw from

    Returns:
        Probability in [0, 1]
    """
    if draws < MIN_DRAWS:
        raise ValidationError(f"draws must be at least {MIN_DRAWS}, got {draws}")
    rng = rng or np.random.default_rng(seed)
    samples_treatment = treatment.sample(draws, rng)
    samples_control = control.sample(draws, rng)
    return float(np.mean(samples_treatment > samples_control))
