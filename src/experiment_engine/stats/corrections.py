"""
Multiple-comparison corrections for A/B/n experiments.

Bonferroni (family-wise error) and Benjamini-Hochberg (false discovery rate)
adjusted p-values, returned in the input order.
"""

from typing import List, Sequence, Union

import numpy as np

from ..errors import ValidationError
from ..schema import CorrectionMethod


def _benjamini_hochberg(p_arr: np.ndarray) -> np.ndarray:
    """Step-up BH adjustment with monotone enforcement across ranks."""
    n = len(p_arr)
    order = np.argsort(p_arr, kind="mergesort")
    p_sorted = p_arr[order]

    ranks = np.arange(1, n + 1)
    adjusted = p_sorted * n / ranks
    # Larger ranks never get a smaller adjusted p-value than smaller ranks
    adjusted = np.minimum.accumulate(adjusted[::-1])[::-1]
    adjusted = np.minimum(adjusted, 1.0)

    result = np.empty(n)
    result[order] = adjusted
    return result


def multiple_comparisons_correction(
    p_values: Sequence[float],
    method: Union[CorrectionMethod, str] = CorrectionMethod.BENJAMINI_HOCHBERG,
) -> List[float]:
    """
    Adjust p-values for multiple comparisons.

    Args:
        p_values: Raw p-values, one per treatment comparison
        method: 'bonferroni', 'benjamini_hochberg' or 'none'

    Returns:
        Adjusted p-values in the same order as the input
    """
    try:
        method = CorrectionMethod(method)
    except ValueError as e:
        raise ValidationError(f"Unknown correction method '{method}'") from e

    p_arr = np.asarray(list(p_values), dtype=float)
    if p_arr.size == 0:
        return []
    if np.any(np.isnan(p_arr)) or np.any(p_arr < 0) or np.any(p_arr > 1):
        raise ValidationError("p-values must be within [0, 1]")

    if method == CorrectionMethod.NONE:
        adjusted = p_arr
    elif method == CorrectionMethod.BONFERRONI:
        adjusted = np.minimum(p_arr * p_arr.size, 1.0)
    else:
        adjusted = _benjamini_hochberg(p_arr)
    return [float(p) for p in adjusted]
