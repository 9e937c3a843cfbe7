"""Tests for the multi-armed bandit optimizer."""
import pytest

from src.experiment_engine.bandit import (
    BanditOptimizer,
    apply_allocation_floor,
    calculate_regret,
)
from src.experiment_engine.errors import ValidationError
from src.experiment_engine.schema import AggregateMetrics


def _metrics(**arms):
    """arms: variant_id=(conversions, participants)"""
    return {
        vid: AggregateMetrics("exp_1", vid, participants=n, conversions=x)
        for vid, (x, n) in arms.items()
    }


def test_epsilon_greedy_split():
    """Best arm gets 1 - epsilon plus its share of exploration."""
    bandit = BanditOptimizer(seed=0)
    result = bandit.allocate(
        "exp_1",
        _metrics(a=(10, 100), b=(30, 100), c=(20, 100)),
        algorithm="epsilon_greedy",
        epsilon=0.1,
        min_allocation=0.0,
    )
    assert result.allocation["b"] == pytest.approx(90 + 10 / 3)
    assert result.allocation["a"] == pytest.approx(10 / 3)
    assert sum(result.allocation.values()) == pytest.approx(100.0)
    assert result.expected_regret == pytest.approx(0.01)


def test_floor_applied_to_losing_arms():
    bandit = BanditOptimizer(seed=0)
    result = bandit.allocate(
        "exp_1",
        _metrics(a=(10, 100), b=(30, 100), c=(20, 100)),
        algorithm="epsilon_greedy",
        epsilon=0.0,
        min_allocation=1.0,
    )
    assert result.allocation == pytest.approx({"a": 1.0, "b": 98.0, "c": 1.0})


def test_thompson_favours_better_arm():
    bandit = BanditOptimizer(seed=1)
    result = bandit.allocate("exp_1", _metrics(a=(50, 1000), b=(200, 1000)), algorithm="thompson_sampling")
    assert result.allocation["b"] > 70
    assert min(result.allocation.values()) >= 1.0
    assert sum(result.allocation.values()) == pytest.approx(100.0)
    assert result.algorithm == "thompson_sampling"


def test_thompson_seeded():
    metrics = _metrics(a=(50, 1000), b=(60, 1000))
    r1 = BanditOptimizer(seed=5).allocate("exp_1", metrics, algorithm="thompson_sampling")
    r2 = BanditOptimizer(seed=5).allocate("exp_1", metrics, algorithm="thompson_sampling")
    assert r1.allocation == r2.allocation


def test_ucb_equal_arms_split_evenly():
    bandit = BanditOptimizer()
    result = bandit.allocate("exp_1", _metrics(a=(10, 100), b=(10, 100)), algorithm="ucb1")
    assert result.allocation == pytest.approx({"a": 50.0, "b": 50.0})


def test_ucb_unpulled_arm_gets_top_score():
    bandit = BanditOptimizer()
    result = bandit.allocate("exp_1", _metrics(a=(10, 100), b=(0, 0)), algorithm="ucb1")
    assert result.scores["b"] == pytest.approx(result.scores["a"])
    assert result.allocation["b"] == pytest.approx(50.0)


def test_ucb_all_unpulled():
    bandit = BanditOptimizer()
    result = bandit.allocate("exp_1", _metrics(a=(0, 0), b=(0, 0), c=(0, 0)), algorithm="ucb1")
    assert result.allocation == pytest.approx({"a": 100 / 3, "b": 100 / 3, "c": 100 / 3})


def test_invalid_parameters():
    bandit = BanditOptimizer()
    with pytest.raises(ValidationError):
        bandit.allocate("exp_1", _metrics(a=(1, 10)), algorithm="softmax")
    with pytest.raises(ValidationError):
        bandit.allocate("exp_1", _metrics(a=(1, 10)), algorithm="epsilon_greedy", epsilon=1.5)
    with pytest.raises(ValidationError):
        bandit.allocate("exp_1", {})


def test_select_arm_ucb_tries_unpulled_first():
    bandit = BanditOptimizer(seed=0)
    bandit.initialize("exp_1", ["a", "b"])
    bandit.record_reward("exp_1", "a", 1.0)
    assert bandit.select_arm("exp_1", algorithm="ucb1") == "b"


def test_select_arm_greedy_exploits():
    bandit = BanditOptimizer(seed=0)
    bandit.initialize("exp_1", ["a", "b"])
    bandit.record_reward("exp_1", "a", 1.0)
    bandit.record_reward("exp_1", "b", 0.0)
    assert bandit.select_arm("exp_1", algorithm="epsilon_greedy", epsilon=0.0) == "a"


def test_arm_state_bookkeeping():
    bandit = BanditOptimizer()
    bandit.record_reward("exp_1", "a", 1.0)
    bandit.record_reward("exp_1", "a", 0.0)
    state = bandit.arm_states("exp_1")["a"]
    assert state.pulls == 2
    assert state.mean_reward == pytest.approx(0.5)
    assert list(state.reward_history) == [1.0, 0.0]

    state.pulls = 99
    assert bandit.arm_states("exp_1")["a"].pulls == 2

    bandit.discard("exp_1")
    assert bandit.arm_states("exp_1") == {}
    with pytest.raises(ValidationError):
        bandit.select_arm("exp_1")


def test_apply_allocation_floor():
    allocation = apply_allocation_floor({"a": 97.0, "b": 2.0, "c": 1.0}, 5.0)
    assert allocation == pytest.approx({"a": 90.0, "b": 5.0, "c": 5.0})


def test_apply_allocation_floor_capped():
    """A floor above 100 / k is capped to an even split."""
    allocation = apply_allocation_floor({"a": 100.0, "b": 0.0}, 60.0)
    assert allocation == pytest.approx({"a": 50.0, "b": 50.0})


def test_calculate_regret():
    assert calculate_regret({"a": 0.1, "b": 0.2}, {"a": 50.0, "b": 50.0}) == pytest.approx(0.05)
    assert calculate_regret({"a": 0.1, "b": 0.2}, {"a": 0.0, "b": 100.0}) == pytest.approx(0.0)
    assert calculate_regret({}, {}) == 0.0
