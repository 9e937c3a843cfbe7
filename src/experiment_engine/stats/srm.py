"""
Sample Ratio Mismatch (SRM) chi-square test.

Detects if the observed participants per arm deviate significantly from the
configured traffic split.
"""

from typing import Sequence, Tuple

import numpy as np
from scipy import stats


def srm_chi_square(
    observed: Sequence[int],
    expected_percentages: Sequence[float],
) -> Tuple[float, float]:
    """
    Chi-square test for sample ratio mismatch across k arms.

    H0: participants are split according to expected_percentages
    H1: the split differs

    Args:
        observed: Participants per arm
        expected_percentages: Configured traffic per arm (0-100, same order)

    Returns:
        Tuple of (chi2_statistic, p_value)
    """
    observed = np.asarray(observed, dtype=float)
    weights = np.asarray(expected_percentages, dtype=float)
    n_total = observed.sum()
    if n_total == 0 or len(observed) < 2 or weights.sum() <= 0:
        return 0.0, 1.0

    expected = n_total * weights / weights.sum()

    # Avoid division by zero
    expected = np.where(expected == 0, 1e-10, expected)

    chi2 = np.sum((observed - expected) ** 2 / expected)
    p_value = stats.chi2.sf(chi2, df=len(observed) - 1)

    return float(chi2), float(p_value)


def check_srm(
    observed: Sequence[int],
    expected_percentages: Sequence[float],
    alpha: float = 0.01,
) -> Tuple[bool, float, float]:
    """
    Check for sample ratio mismatch.

    Args:
        observed: Participants per arm
        expected_percentages: Configured traffic per arm
        alpha: Significance threshold (default 0.01)

    Returns:
        Tuple of (srm_passed, chi2_statistic, p_value)
    """
    chi2, p_value = srm_chi_square(observed, expected_percentages)
    srm_passed = p_value >= alpha
    return srm_passed, chi2, p_value
