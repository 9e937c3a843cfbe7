"""Tests for SRM check."""
import pytest

from src.experiment_engine.stats.srm import check_srm, srm_chi_square


def test_srm_balanced():
    """Balanced 50/50 passes SRM."""
    passed, chi2, p = check_srm([500, 500], [50, 50])
    assert passed
    assert chi2 == pytest.approx(0.0)
    assert p > 0.01


def test_srm_imbalanced():
    """90/10 split on a 50/50 experiment fails SRM."""
    passed, chi2, p = check_srm([900, 100], [50, 50])
    assert not passed
    assert p < 0.01


def test_srm_weighted_split():
    """80/20 traffic observed as 80/20 passes."""
    passed, _, _ = check_srm([800, 200], [80, 20])
    assert passed


def test_srm_three_arms():
    """k-arm check uses k - 1 degrees of freedom."""
    passed, _, p = check_srm([334, 333, 333], [33.4, 33.3, 33.3])
    assert passed
    passed, _, _ = check_srm([500, 250, 250], [33.4, 33.3, 33.3])
    assert not passed


def test_srm_chi2_output():
    """Chi-square returns (stat, p) in valid ranges."""
    chi2, p = srm_chi_square([520, 480], [50, 50])
    assert chi2 == pytest.approx(1.6)
    assert 0 <= p <= 1


def test_srm_no_data():
    """Empty experiment is not flagged."""
    assert srm_chi_square([0, 0], [50, 50]) == (0.0, 1.0)
    passed, _, _ = check_srm([0, 0], [50, 50])
    assert passed
