"""Tests for the sequential probability ratio test."""
import math

import pytest

from src.experiment_engine.errors import ValidationError
from src.experiment_engine.schema import SequentialDecision
from src.experiment_engine.stats.sequential import log_likelihood_ratio, sequential_test


def test_bounds():
    """Wald bounds for alpha=0.05, beta=0.2."""
    r = sequential_test(10, 100, 10, 100)
    assert r.upper_bound == pytest.approx(math.log(16))
    assert r.lower_bound == pytest.approx(math.log(0.2 / 0.95))


def test_stop_for_efficacy():
    """5/100 vs 15/100 crosses the upper bound."""
    r = sequential_test(5, 100, 15, 100)
    assert r.log_likelihood_ratio == pytest.approx(2.894, abs=0.01)
    assert r.decision == SequentialDecision.STOP_FOR_EFFICACY
    assert r.should_stop


def test_stop_for_futility_when_treatment_worse():
    """A clearly worse treatment drifts to the futility bound."""
    r = sequential_test(15, 100, 5, 100)
    assert r.log_likelihood_ratio < 0
    assert r.decision == SequentialDecision.STOP_FOR_FUTILITY


def test_continue_when_equal():
    r = sequential_test(10, 100, 10, 100)
    assert r.log_likelihood_ratio == pytest.approx(0.0)
    assert r.decision == SequentialDecision.CONTINUE
    assert not r.should_stop


def test_min_observations():
    """Arms below the minimum always continue."""
    r = sequential_test(5, 40, 15, 40)
    assert r.decision == SequentialDecision.CONTINUE
    assert r.log_likelihood_ratio == 0.0


def test_llr_symmetric_sign():
    assert log_likelihood_ratio(5, 100, 15, 100) == pytest.approx(-log_likelihood_ratio(15, 100, 5, 100))
    assert log_likelihood_ratio(0, 0, 5, 100) == 0.0


def test_llr_degenerate_rates():
    """Rates of 0 or 1 do not produce NaN."""
    llr = log_likelihood_ratio(0, 100, 100, 100)
    assert math.isfinite(llr)
    assert llr > 0


def test_invalid_error_rates():
    with pytest.raises(ValidationError):
        sequential_test(5, 100, 15, 100, alpha=0.0)
