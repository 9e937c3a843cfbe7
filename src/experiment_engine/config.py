"""
Engine configuration.

Batching, persistence, caching and decision thresholds shared by the
aggregator, bandit optimizer, decision engine and background scheduler.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict

from .errors import ValidationError

DEFAULT_BATCH_SIZE = 100
DEFAULT_FLUSH_INTERVAL_SECONDS = 5.0
DEFAULT_PERSIST_INTERVAL_SECONDS = 30.0
DEFAULT_PRACTICAL_SIGNIFICANCE = 5.0  # percent lift
DEFAULT_FUTILITY_POWER_FLOOR = 0.10
DEFAULT_MIN_SEQUENTIAL_OBSERVATIONS = 50
DEFAULT_BAYESIAN_DRAWS = 10000

BANDIT_ALGORITHMS = ("epsilon_greedy", "thompson_sampling", "ucb1")


@dataclass
class EngineConfig:
    """Runtime settings for an ExperimentService and its components."""
    batch_size: int = DEFAULT_BATCH_SIZE
    flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS
    persist_interval_seconds: float = DEFAULT_PERSIST_INTERVAL_SECONDS
    aggregate_cache_ttl_seconds: float = 3600.0
    results_cache_ttl_seconds: float = 10.0
    evaluation_interval_seconds: float = 30.0
    scheduler_tick_seconds: float = 1.0

    # Decision thresholds
    practical_significance_threshold: float = DEFAULT_PRACTICAL_SIGNIFICANCE
    futility_power_floor: float = DEFAULT_FUTILITY_POWER_FLOOR
    min_sequential_observations: int = DEFAULT_MIN_SEQUENTIAL_OBSERVATIONS
    sequential_alpha: float = 0.05
    sequential_beta: float = 0.2
    srm_alpha: float = 0.01

    # Bayesian / bandit
    bayesian_draws: int = DEFAULT_BAYESIAN_DRAWS
    bandit_algorithm: str = "thompson_sampling"
    bandit_epsilon: float = 0.10
    bandit_min_allocation: float = 1.0  # percent
    reward_window: int = 1000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build a config from a plain dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ValidationError(f"batch_size must be >= 1, got {self.batch_size}")
        for name in (
            "flush_interval_seconds",
            "persist_interval_seconds",
            "evaluation_interval_seconds",
            "scheduler_tick_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive")
        if self.bandit_algorithm not in BANDIT_ALGORITHMS:
            raise ValidationError(
                f"Unknown bandit algorithm '{self.bandit_algorithm}'. "
                f"Expected one of {', '.join(BANDIT_ALGORITHMS)}"
            )
        if not 0 <= self.bandit_epsilon <= 1:
            raise ValidationError("bandit_epsilon must be within [0, 1]")
        if not 0 <= self.bandit_min_allocation < 50:
            raise ValidationError("bandit_min_allocation must be within [0, 50)")
        if self.bayesian_draws < DEFAULT_BAYESIAN_DRAWS:
            raise ValidationError(
                f"bayesian_draws must be at least {DEFAULT_BAYESIAN_DRAWS}"
            )
        if not (0 < self.sequential_alpha < 1 and 0 < self.sequential_beta < 1):
            raise ValidationError("sequential_alpha and sequential_beta must be within (0, 1)")
