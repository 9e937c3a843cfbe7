"""
Decision engine: experiment lifecycle state machine and statistical stopping.

draft -> running -> {paused, completed, archived}; paused -> {running,
completed}; completed -> archived; draft -> archived. Running experiments are
evaluated as new event batches arrive (sequential testing) and reweighted by
the bandit optimizer when enabled.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Set

from .aggregator import EventAggregator
from .bandit import AllocationResult, BanditOptimizer
from .cache import TTLCache
from .analyze import analyze_experiment
from .config import BANDIT_ALGORITHMS, EngineConfig
from .errors import ExperimentStateError, SequentialTestingError, ValidationError
from .schema import (
    TRAFFIC_TOLERANCE,
    AggregateMetrics,
    AnalysisResult,
    Event,
    Experiment,
    ExperimentAnalysis,
    ExperimentStatus,
    SequentialDecision,
    utcnow,
)
from .stores import ExperimentStore

logger = logging.getLogger(__name__)

TRANSITIONS = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING, ExperimentStatus.ARCHIVED},
    ExperimentStatus.RUNNING: {
        ExperimentStatus.PAUSED,
        ExperimentStatus.COMPLETED,
        ExperimentStatus.ARCHIVED,
    },
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
    ExperimentStatus.COMPLETED: {ExperimentStatus.ARCHIVED},
    ExperimentStatus.ARCHIVED: set(),
}


def validate_experiment(experiment: Experiment) -> None:
    """
    Check an experiment definition before it starts.

    Raises:
        ValidationError: invalid variants, traffic or statistical settings
        SequentialTestingError: sequential testing with more than one treatment
    """
    exp_id = experiment.experiment_id
    variants = experiment.variants
    if len(variants) < 2:
        raise ValidationError(f"Experiment {exp_id} needs at least two variants")

    ids = [v.variant_id for v in variants]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"Experiment {exp_id} has duplicate variant ids")

    controls = [v for v in variants if v.is_control]
    if len(controls) != 1:
        raise ValidationError(
            f"Experiment {exp_id} must have exactly one control variant, found {len(controls)}"
        )

    for v in variants:
        if not 0 <= v.traffic_percentage <= 100:
            raise ValidationError(
                f"Variant {v.variant_id} traffic {v.traffic_percentage} outside [0, 100]"
            )
    total = sum(v.traffic_percentage for v in variants)
    if abs(total - 100) > TRAFFIC_TOLERANCE:
        raise ValidationError(
            f"Variant traffic for {exp_id} sums to {total:.2f}, expected 100"
        )

    if not 0 < experiment.traffic_allocation <= 100:
        raise ValidationError(
            f"traffic_allocation must be within (0, 100], got {experiment.traffic_allocation}"
        )

    stat = experiment.statistical_config
    if not 0 < stat.confidence_level < 1:
        raise ValidationError(f"confidence_level must be within (0, 1), got {stat.confidence_level}")
    if not 0 < stat.power < 1:
        raise ValidationError(f"power must be within (0, 1), got {stat.power}")
    if stat.minimum_detectable_effect <= 0:
        raise ValidationError("minimum_detectable_effect must be positive")
    if stat.minimum_sample_size < 1:
        raise ValidationError("minimum_sample_size must be at least 1")
    if stat.sequential_testing and len(variants) != 2:
        raise SequentialTestingError(
            f"Sequential testing supports exactly one treatment vs control; "
            f"{exp_id} has {len(variants)} variants"
        )

    if experiment.bandit is not None:
        if experiment.bandit.algorithm not in BANDIT_ALGORITHMS:
            raise ValidationError(f"Unknown bandit algorithm '{experiment.bandit.algorithm}'")
        if not 0 <= experiment.bandit.epsilon <= 1:
            raise ValidationError("Bandit epsilon must be within [0, 1]")
        if experiment.bandit.min_allocation * len(variants) > 100:
            raise ValidationError("Bandit min_allocation leaves no room for the split")


class DecisionEngine:
    """
    Owns lifecycle transitions, analysis caching, stopping rules and
    bandit reallocation for all experiments in a store.

    Args:
        experiment_store: Source of experiment definitions
        aggregator: Live per-variant counters
        bandit: Optimizer used for experiments with a BanditConfig
        config: Thresholds and cache TTLs
        clock: Clock for the results cache
    """

    def __init__(
        self,
        experiment_store: ExperimentStore,
        aggregator: EventAggregator,
        bandit: Optional[BanditOptimizer] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        seed: Optional[int] = None,
    ):
        self.experiment_store = experiment_store
        self.aggregator = aggregator
        self.config = config or EngineConfig()
        self.bandit = bandit or BanditOptimizer(self.config, seed=seed)
        self.seed = seed
        cache_kwargs = {"clock": clock} if clock is not None else {}
        self._results_cache = TTLCache(self.config.results_cache_ttl_seconds, **cache_kwargs)
        self._dirty: Set[str] = set()
        self._dirty_lock = threading.Lock()
        self._lock = threading.RLock()
        aggregator.add_flush_listener(self._on_flush)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(
        self,
        experiment: Experiment,
        target: ExperimentStatus,
        **changes,
    ) -> Experiment:
        if target not in TRANSITIONS[experiment.status]:
            raise ExperimentStateError(
                f"Cannot move experiment {experiment.experiment_id} "
                f"from {experiment.status.value} to {target.value}"
            )
        updated = self.experiment_store.update_status(experiment.experiment_id, target, **changes)
        self._results_cache.invalidate(experiment.experiment_id)
        logger.info(
            f"Experiment {experiment.experiment_id}: {experiment.status.value} -> {target.value}"
        )
        return updated

    def start(self, experiment_id: str) -> Experiment:
        """Validate and start a draft experiment, or resume a paused one."""
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            if experiment.status == ExperimentStatus.PAUSED:
                return self.resume(experiment_id)
            validate_experiment(experiment)
            updated = self._transition(experiment, ExperimentStatus.RUNNING, start_date=utcnow())
            if updated.bandit is not None:
                self.bandit.initialize(experiment_id, [v.variant_id for v in updated.variants])
            return updated

    def pause(self, experiment_id: str) -> Experiment:
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            return self._transition(experiment, ExperimentStatus.PAUSED)

    def resume(self, experiment_id: str) -> Experiment:
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            if experiment.status != ExperimentStatus.PAUSED:
                raise ExperimentStateError(
                    f"Only paused experiments can be resumed; {experiment_id} is "
                    f"{experiment.status.value}"
                )
            return self._transition(experiment, ExperimentStatus.RUNNING)

    def stop(self, experiment_id: str, reason: str = "manual") -> Experiment:
        """
        Complete a running or paused experiment, storing its final analysis.

        Args:
            experiment_id: Experiment identifier
            reason: Why the experiment was stopped (kept on the experiment)

        Returns:
            The completed Experiment
        """
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            if ExperimentStatus.COMPLETED not in TRANSITIONS[experiment.status]:
                raise ExperimentStateError(
                    f"Cannot stop experiment {experiment_id} in status {experiment.status.value}"
                )
            self.aggregator.flush(experiment_id)
            analysis = self._analyze(experiment)
            updated = self._transition(
                experiment,
                ExperimentStatus.COMPLETED,
                end_date=utcnow(),
                results=analysis.to_dict(),
                stop_reason=reason,
            )
            self.bandit.discard(experiment_id)
            logger.info(f"Experiment {experiment_id} stopped: {reason}")
            return updated

    def archive(self, experiment_id: str) -> Experiment:
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            updated = self._transition(experiment, ExperimentStatus.ARCHIVED, end_date=experiment.end_date or utcnow())
            self.bandit.discard(experiment_id)
            return updated

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _metrics(self, experiment: Experiment) -> Dict[str, AggregateMetrics]:
        return self.aggregator.get_metrics(experiment.experiment_id)

    def _analyze(self, experiment: Experiment) -> ExperimentAnalysis:
        return analyze_experiment(experiment, self._metrics(experiment), self.config, seed=self.seed)

    def get_analysis(self, experiment_id: str) -> ExperimentAnalysis:
        """
        Current analysis for an experiment.

        Completed and archived experiments return their stored final analysis;
        otherwise the analysis is cached for results_cache_ttl_seconds.
        """
        experiment = self.experiment_store.get(experiment_id)
        if experiment.is_terminal and experiment.results:
            return ExperimentAnalysis.from_dict(experiment.results)

        cached = self._results_cache.get(experiment_id)
        if cached is not None:
            return cached
        analysis = self._analyze(experiment)
        self._results_cache.set(experiment_id, analysis)
        return analysis

    def get_results(self, experiment_id: str) -> List[AnalysisResult]:
        return self.get_analysis(experiment_id).results

    def _on_flush(self, experiment_id: str, events: List[Event]) -> None:
        with self._dirty_lock:
            self._dirty.add(experiment_id)
        self._results_cache.invalidate(experiment_id)

    def evaluate(self, experiment_id: str) -> Optional[SequentialDecision]:
        """
        Apply the stopping rules to a running sequential experiment.

        Stops for efficacy when the SPRT verdict is efficacy, the adjusted
        z-test is significant, every arm has the minimum sample and the lift
        clears the practical-significance floor. Stops for futility on an
        SPRT futility verdict, or when the minimum sample is reached and the
        observed power is below the futility floor.

        Returns:
            The stopping decision applied, or None if the experiment continues
        """
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                return None
            if not experiment.statistical_config.sequential_testing:
                return None

            analysis = self._analyze(experiment)
            self._results_cache.set(experiment_id, analysis)
            if not analysis.results:
                return None
            result = analysis.results[0]
            sample = analysis.sample_size_analysis

            efficacy = (
                result.sequential_decision == SequentialDecision.STOP_FOR_EFFICACY
                and result.is_significant
                and sample.sample_size_reached
                and result.practical_significance
            )
            futility = result.sequential_decision == SequentialDecision.STOP_FOR_FUTILITY or (
                sample.sample_size_reached
                and sample.observed_power < self.config.futility_power_floor
            )

            if efficacy:
                self.stop(
                    experiment_id,
                    reason=f"efficacy: {result.variant_id} lift {result.lift:.2f}% "
                    f"(p_adj={result.adjusted_p_value:.4f})",
                )
                return SequentialDecision.STOP_FOR_EFFICACY
            if futility:
                self.stop(
                    experiment_id,
                    reason=f"futility: observed power {sample.observed_power:.2f}",
                )
                return SequentialDecision.STOP_FOR_FUTILITY
            logger.debug(f"Experiment {experiment_id} continues (lift {result.lift:.2f}%)")
            return None

    def reallocate(self, experiment_id: str) -> Optional[AllocationResult]:
        """Ask the bandit for a new split and write it to the variants."""
        with self._lock:
            experiment = self.experiment_store.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING or experiment.bandit is None:
                return None
            metrics = self._metrics(experiment)
            arms = {
                v.variant_id: metrics.get(v.variant_id) or AggregateMetrics(experiment_id, v.variant_id)
                for v in experiment.variants
            }
            result = self.bandit.allocate(
                experiment_id,
                arms,
                algorithm=experiment.bandit.algorithm,
                epsilon=experiment.bandit.epsilon,
                min_allocation=experiment.bandit.min_allocation,
            )
            self.experiment_store.update_traffic(experiment_id, result.allocation)
            self._results_cache.invalidate(experiment_id)
            return result

    def run_cycle(self, evaluate_all: bool = False) -> Dict[str, str]:
        """
        One background pass: reallocate bandit experiments and evaluate
        sequential experiments that received new events.

        Returns:
            Dict of experiment_id -> action taken
        """
        with self._dirty_lock:
            dirty, self._dirty = self._dirty, set()

        actions = {}
        for experiment in self.experiment_store.list(ExperimentStatus.RUNNING):
            exp_id = experiment.experiment_id
            if experiment.statistical_config.sequential_testing and (evaluate_all or exp_id in dirty):
                decision = self.evaluate(exp_id)
                if decision is not None:
                    actions[exp_id] = decision.value
                    continue
            if experiment.bandit is not None:
                self.reallocate(exp_id)
                actions[exp_id] = "reallocated"
        return actions
