"""
Multi-armed bandit traffic optimizer.

Turns per-arm conversion counts into a traffic split (percent per variant)
with epsilon-greedy, Thompson sampling or UCB1. Every arm keeps a minimum
allocation so no variant is starved of data.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from .config import BANDIT_ALGORITHMS, EngineConfig
from .errors import ValidationError
from .schema import AggregateMetrics, BanditArmState

logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    experiment_id: str
    allocation: Dict[str, float]  # variant_id -> percent, sums to 100
    algorithm: str
    expected_regret: float
    scores: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "experiment_id": self.experiment_id,
            "allocation": dict(self.allocation),
            "algorithm": self.algorithm,
            "expected_regret": self.expected_regret,
            "scores": dict(self.scores),
        }


def apply_allocation_floor(allocation: Mapping[str, float], floor: float) -> Dict[str, float]:
    """
    Raise every arm to at least ``floor`` percent, rescaling the rest.

    Arms pushed to the floor are fixed and the remaining mass is shared
    proportionally among the others until no arm is below the floor.
    The floor is capped at 100 / k.
    """
    arms = list(allocation)
    if not arms:
        return {}
    floor = min(max(floor, 0.0), 100.0 / len(arms))

    fixed: Dict[str, float] = {}
    free = {a: max(float(allocation[a]), 0.0) for a in arms}
    scaled: Dict[str, float] = {}
    while free:
        remaining = 100.0 - floor * len(fixed)
        total_free = sum(free.values())
        if total_free <= 0:
            scaled = {a: remaining / len(free) for a in free}
        else:
            scaled = {a: v / total_free * remaining for a, v in free.items()}
        low = [a for a, v in scaled.items() if v < floor]
        if not low:
            break
        for a in low:
            fixed[a] = floor
            del free[a]
            scaled.pop(a)

    return {a: fixed[a] if a in fixed else scaled[a] for a in arms}


class BanditOptimizer:
    """
    Holds per-experiment arm state and computes traffic allocations.

    Args:
        config: Default algorithm, epsilon, floor and reward window
        seed: Seed for the random generator (exploration and Thompson draws)
        rng: NumPy generator; overrides seed
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config or EngineConfig()
        self.rng = rng or np.random.default_rng(seed)
        self._arms: Dict[str, Dict[str, BanditArmState]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Arm state
    # ------------------------------------------------------------------

    def _new_arm(self, variant_id: str) -> BanditArmState:
        return BanditArmState(
            variant_id=variant_id,
            reward_history=deque(maxlen=self.config.reward_window),
        )

    def initialize(self, experiment_id: str, variant_ids: Sequence[str]) -> None:
        with self._lock:
            arms = self._arms.setdefault(experiment_id, {})
            for vid in variant_ids:
                arms.setdefault(vid, self._new_arm(vid))
        logger.info(f"Bandit arms initialised for {experiment_id}: {list(variant_ids)}")

    def record_reward(self, experiment_id: str, variant_id: str, reward: float) -> None:
        """Record one pull of an arm with its observed reward."""
        with self._lock:
            arms = self._arms.setdefault(experiment_id, {})
            arm = arms.get(variant_id)
            if arm is None:
                arm = arms[variant_id] = self._new_arm(variant_id)
            arm.pulls += 1
            arm.cumulative_reward += reward
            arm.reward_history.append(reward)

    def sync_from_metrics(
        self,
        experiment_id: str,
        metrics: Mapping[str, AggregateMetrics],
    ) -> None:
        """Overwrite pulls/rewards with aggregate counts (participants, conversions)."""
        with self._lock:
            arms = self._arms.setdefault(experiment_id, {})
            for vid, m in metrics.items():
                arm = arms.get(vid)
                if arm is None:
                    arm = arms[vid] = self._new_arm(vid)
                arm.pulls = m.participants
                arm.cumulative_reward = float(m.conversions)

    def arm_states(self, experiment_id: str) -> Dict[str, BanditArmState]:
        with self._lock:
            return {
                vid: BanditArmState(
                    variant_id=a.variant_id,
                    pulls=a.pulls,
                    cumulative_reward=a.cumulative_reward,
                    reward_history=deque(a.reward_history, maxlen=a.reward_history.maxlen),
                )
                for vid, a in self._arms.get(experiment_id, {}).items()
            }

    def discard(self, experiment_id: str) -> None:
        with self._lock:
            removed = self._arms.pop(experiment_id, None)
        if removed is not None:
            logger.info(f"Bandit state discarded for {experiment_id}")

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _resolve(self, algorithm: Optional[str], epsilon: Optional[float]):
        algorithm = algorithm or self.config.bandit_algorithm
        if algorithm not in BANDIT_ALGORITHMS:
            raise ValidationError(
                f"Unknown bandit algorithm '{algorithm}'. "
                f"Expected one of {', '.join(BANDIT_ALGORITHMS)}"
            )
        epsilon = self.config.bandit_epsilon if epsilon is None else epsilon
        if not 0 <= epsilon <= 1:
            raise ValidationError(f"epsilon must be within [0, 1], got {epsilon}")
        return algorithm, epsilon

    def _thompson_draws(self, arms: Mapping[str, BanditArmState]) -> Dict[str, float]:
        draws = {}
        for vid, arm in arms.items():
            successes = min(arm.cumulative_reward, arm.pulls)
            draws[vid] = float(self.rng.beta(1 + successes, 1 + arm.pulls - successes))
        return draws

    @staticmethod
    def _ucb_scores(arms: Mapping[str, BanditArmState]) -> Dict[str, float]:
        """UCB1 scores; never-pulled arms get the best finite score (or 1.0)."""
        total = sum(a.pulls for a in arms.values())
        scores = {
            vid: arm.mean_reward + arm.confidence_radius(total)
            for vid, arm in arms.items()
        }
        finite = [s for s in scores.values() if math.isfinite(s)]
        top = max(finite) if finite else 1.0
        return {vid: s if math.isfinite(s) else top for vid, s in scores.items()}

    def allocate(
        self,
        experiment_id: str,
        metrics: Mapping[str, AggregateMetrics],
        algorithm: Optional[str] = None,
        epsilon: Optional[float] = None,
        min_allocation: Optional[float] = None,
    ) -> AllocationResult:
        """
        Compute a traffic split from current per-arm counts.

        Args:
            experiment_id: Experiment identifier
            metrics: variant_id -> AggregateMetrics for every arm
            algorithm: 'epsilon_greedy', 'thompson_sampling' or 'ucb1'
            epsilon: Exploration share for epsilon-greedy
            min_allocation: Floor per arm in percent

        Returns:
            AllocationResult with percentages summing to 100
        """
        algorithm, epsilon = self._resolve(algorithm, epsilon)
        floor = self.config.bandit_min_allocation if min_allocation is None else min_allocation
        if not metrics:
            raise ValidationError(f"No arms to allocate for {experiment_id}")

        self.sync_from_metrics(experiment_id, metrics)
        arms = {vid: a for vid, a in self.arm_states(experiment_id).items() if vid in metrics}
        k = len(arms)
        rates = {vid: a.mean_reward for vid, a in arms.items()}

        if algorithm == "epsilon_greedy":
            scores = dict(rates)
            best = max(arms, key=lambda vid: rates[vid])
            explore = epsilon * 100.0 / k
            raw = {vid: explore for vid in arms}
            raw[best] += (1 - epsilon) * 100.0
        else:
            scores = self._thompson_draws(arms) if algorithm == "thompson_sampling" else self._ucb_scores(arms)
            total = sum(scores.values())
            if total <= 0:
                raw = {vid: 100.0 / k for vid in arms}
            else:
                raw = {vid: s / total * 100.0 for vid, s in scores.items()}

        allocation = apply_allocation_floor(raw, floor)
        result = AllocationResult(
            experiment_id=experiment_id,
            allocation=allocation,
            algorithm=algorithm,
            expected_regret=calculate_regret(rates, allocation),
            scores=scores,
        )
        logger.info(
            f"Bandit allocation for {experiment_id} ({algorithm}): "
            + ", ".join(f"{vid}={pct:.1f}%" for vid, pct in allocation.items())
        )
        return result

    def select_arm(
        self,
        experiment_id: str,
        algorithm: Optional[str] = None,
        epsilon: Optional[float] = None,
    ) -> str:
        """Hard-select one arm from the recorded state (online serving)."""
        algorithm, epsilon = self._resolve(algorithm, epsilon)
        arms = self.arm_states(experiment_id)
        if not arms:
            raise ValidationError(f"No bandit arms for {experiment_id}")
        ids = list(arms)

        if algorithm == "epsilon_greedy":
            if self.rng.random() < epsilon:
                return ids[int(self.rng.integers(len(ids)))]
            return max(ids, key=lambda vid: arms[vid].mean_reward)
        if algorithm == "thompson_sampling":
            draws = self._thompson_draws(arms)
            return max(ids, key=lambda vid: draws[vid])

        unpulled = [vid for vid in ids if arms[vid].pulls == 0]
        if unpulled:
            return unpulled[0]
        scores = self._ucb_scores(arms)
        return max(ids, key=lambda vid: scores[vid])


def calculate_regret(
    rewards: Mapping[str, float],
    allocation: Mapping[str, float],
) -> float:
    """Best arm rate minus the allocation-weighted rate (rates as fractions)."""
    if not rewards:
        return 0.0
    weighted = sum(allocation.get(vid, 0.0) / 100.0 * r for vid, r in rewards.items())
    return max(max(rewards.values()) - weighted, 0.0)
