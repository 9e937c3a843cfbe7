"""Tests for multiple-comparison corrections."""
import pytest

from src.experiment_engine.errors import ValidationError
from src.experiment_engine.schema import CorrectionMethod
from src.experiment_engine.stats.corrections import multiple_comparisons_correction


def test_bonferroni():
    adjusted = multiple_comparisons_correction([0.01, 0.04, 0.3], CorrectionMethod.BONFERRONI)
    assert adjusted == pytest.approx([0.03, 0.12, 0.9])


def test_bonferroni_capped():
    assert multiple_comparisons_correction([0.5, 0.6], "bonferroni") == [1.0, 1.0]


def test_benjamini_hochberg_input_order():
    """Adjusted values come back in input order, monotone in rank."""
    adjusted = multiple_comparisons_correction([0.01, 0.04, 0.03, 0.2])
    assert adjusted == pytest.approx([0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.2])


def test_benjamini_hochberg_not_below_raw():
    raw = [0.001, 0.02, 0.5, 0.049]
    adjusted = multiple_comparisons_correction(raw, "benjamini_hochberg")
    assert all(a >= p for a, p in zip(adjusted, raw))


def test_single_comparison_unchanged():
    assert multiple_comparisons_correction([0.03]) == pytest.approx([0.03])


def test_none_method():
    assert multiple_comparisons_correction([0.01, 0.2], "none") == pytest.approx([0.01, 0.2])


def test_empty():
    assert multiple_comparisons_correction([]) == []


def test_invalid_inputs():
    with pytest.raises(ValidationError):
        multiple_comparisons_correction([0.01], "holm")
    with pytest.raises(ValidationError):
        multiple_comparisons_correction([1.2])
