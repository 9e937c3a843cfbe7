"""Experiment statistics module."""

from .srm import srm_chi_square, check_srm
from .power import sample_size, mde_proportion, power_proportion, two_proportion_power
from .hypothesis_tests import (
    ProportionTestResult,
    two_proportion_test,
    confidence_interval,
    effect_size,
    relative_lift,
)
from .sequential import SequentialTestResult, sequential_test, log_likelihood_ratio
from .bayesian import BetaPosterior, bayesian_posterior, probability_treatment_better
from .corrections import multiple_comparisons_correction

__all__ = [
    "srm_chi_square",
    "check_srm",
    "sample_size",
    "mde_proportion",
    "power_proportion",
    "two_proportion_power",
    "ProportionTestResult",
    "two_proportion_test",
    "confidence_interval",
    "effect_size",
    "relative_lift",
    "SequentialTestResult",
    "sequential_test",
    "log_likelihood_ratio",
    "BetaPosterior",
    "bayesian_posterior",
    "probability_treatment_better",
    "multiple_comparisons_correction",
]
