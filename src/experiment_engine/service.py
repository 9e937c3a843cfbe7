"""
Caller-facing facade over the assignment engine, event aggregator, decision
engine and background scheduler.

Stores are injected; ExperimentService.in_memory() wires the in-memory
reference implementations.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .aggregator import EventAggregator
from .assignment import AssignmentEngine
from .bandit import AllocationResult, BanditOptimizer
from .config import EngineConfig
from .decision import DecisionEngine, validate_experiment
from .errors import ExperimentStateError, ValidationError
from .event_store import InMemoryEventStore
from .scheduler import DecisionScheduler
from .schema import (
    AggregateMetrics,
    AnalysisResult,
    Event,
    EventType,
    Experiment,
    ExperimentAnalysis,
    ExperimentStatus,
    GoalMetrics,
    VariantConfig,
)
from .stores import (
    AggregateCache,
    AssignmentStore,
    EventStore,
    ExperimentStore,
    InMemoryAggregateCache,
    InMemoryAssignmentStore,
    InMemoryExperimentStore,
)

logger = logging.getLogger(__name__)


class ExperimentService:
    """
    Experimentation service for one deployment.

    Args:
        experiment_store: Experiment definitions
        assignment_store: Sticky assignments
        event_store: Durable event log
        aggregate_cache: Snapshot cache for aggregate counters
        config: Engine configuration
        seed: Seed for bandit and Bayesian draws
    """

    def __init__(
        self,
        experiment_store: ExperimentStore,
        assignment_store: AssignmentStore,
        event_store: EventStore,
        aggregate_cache: Optional[AggregateCache] = None,
        config: Optional[EngineConfig] = None,
        seed: Optional[int] = None,
    ):
        self.config = config or EngineConfig()
        self.config.validate()
        self.experiment_store = experiment_store
        self.aggregator = EventAggregator(event_store, aggregate_cache, self.config)
        self.assignment = AssignmentEngine(assignment_store, on_exposure=self.aggregator.track)
        self.bandit = BanditOptimizer(self.config, seed=seed)
        self.decision = DecisionEngine(
            experiment_store, self.aggregator, self.bandit, self.config, seed=seed
        )
        self.scheduler = DecisionScheduler(self.aggregator, self.decision, self.config)

    @classmethod
    def in_memory(
        cls,
        config: Optional[EngineConfig] = None,
        seed: Optional[int] = None,
    ) -> "ExperimentService":
        config = config or EngineConfig()
        return cls(
            experiment_store=InMemoryExperimentStore(),
            assignment_store=InMemoryAssignmentStore(),
            event_store=InMemoryEventStore(),
            aggregate_cache=InMemoryAggregateCache(config.aggregate_cache_ttl_seconds),
            config=config,
            seed=seed,
        )

    # ------------------------------------------------------------------
    # Definitions and lifecycle
    # ------------------------------------------------------------------

    def create_experiment(self, experiment: Experiment) -> Experiment:
        """Validate and store a new draft experiment."""
        if experiment.status != ExperimentStatus.DRAFT:
            raise ExperimentStateError(
                f"New experiments must be drafts, got {experiment.status.value}"
            )
        validate_experiment(experiment)
        self.experiment_store.save(experiment)
        logger.info(
            f"Created experiment {experiment.experiment_id} with "
            f"{len(experiment.variants)} variants"
        )
        return self.experiment_store.get(experiment.experiment_id)

    def get_experiment(self, experiment_id: str) -> Experiment:
        return self.experiment_store.get(experiment_id)

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        return self.experiment_store.list(status)

    def start(self, experiment_id: str) -> Experiment:
        return self.decision.start(experiment_id)

    def pause(self, experiment_id: str) -> Experiment:
        return self.decision.pause(experiment_id)

    def resume(self, experiment_id: str) -> Experiment:
        return self.decision.resume(experiment_id)

    def stop(self, experiment_id: str, reason: str = "manual") -> Experiment:
        return self.decision.stop(experiment_id, reason)

    def archive(self, experiment_id: str) -> Experiment:
        return self.decision.archive(experiment_id)

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def assign(
        self,
        experiment_id: str,
        user_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        session_properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Assign a user to a variant.

        Returns:
            variant_id, or None if the experiment is not running or the user
            is not eligible
        """
        experiment = self.experiment_store.get(experiment_id)
        return self.assignment.assign(experiment, user_id, user_properties, session_properties)

    def assign_all(
        self,
        user_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        session_properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """Assign a user to every running experiment they qualify for."""
        running = self.experiment_store.list(ExperimentStatus.RUNNING)
        return self.assignment.assign_all(running, user_id, user_properties, session_properties)

    def get_variant_config(
        self,
        experiment_id: str,
        user_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        session_properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[VariantConfig]:
        experiment = self.experiment_store.get(experiment_id)
        return self.assignment.get_variant_config(
            experiment, user_id, user_properties, session_properties
        )

    def reset_assignment(self, experiment_id: str, user_id: str) -> bool:
        self.experiment_store.get(experiment_id)
        return self.assignment.reset_assignment(experiment_id, user_id)

    def track_event(self, event: Event) -> bool:
        """
        Record a behavioural event against the user's variant.

        Returns:
            False if the event id was already tracked
        """
        experiment = self.experiment_store.get(event.experiment_id)
        if experiment.get_variant(event.variant_id) is None:
            raise ValidationError(
                f"Unknown variant {event.variant_id} for experiment {event.experiment_id}"
            )
        return self.aggregator.track(event)

    def track_goal(
        self,
        experiment_id: str,
        variant_id: str,
        user_id: str,
        goal_id: str,
        value: Optional[float] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record a custom goal hit, counted under ``goal_id`` in the goal metrics."""
        props = dict(properties or {})
        session_id = str(props.get("session_id") or "unknown")
        props["goal_id"] = goal_id
        return self.track_event(
            Event(
                experiment_id=experiment_id,
                variant_id=variant_id,
                user_id=str(user_id),
                event_type=EventType.GOAL,
                event_name=f"goal_{goal_id}",
                session_id=session_id,
                value=value,
                properties=props,
            )
        )

    # ------------------------------------------------------------------
    # Results and analyses
    # ------------------------------------------------------------------

    def get_results(self, experiment_id: str) -> List[AnalysisResult]:
        return self.decision.get_results(experiment_id)

    def get_analysis(self, experiment_id: str) -> ExperimentAnalysis:
        return self.decision.get_analysis(experiment_id)

    def get_metrics(self, experiment_id: str) -> Dict[str, AggregateMetrics]:
        self.experiment_store.get(experiment_id)
        return self.aggregator.get_metrics(experiment_id)

    def get_goal_metrics(
        self, experiment_id: str, goal_id: str, variant_id: str
    ) -> Optional[GoalMetrics]:
        self.experiment_store.get(experiment_id)
        return self.aggregator.get_goal_metrics(experiment_id, goal_id, variant_id)

    def get_goal_results(self, experiment_id: str) -> Dict[str, Dict[str, GoalMetrics]]:
        self.experiment_store.get(experiment_id)
        return self.aggregator.get_goal_results(experiment_id)

    def evaluate(self, experiment_id: str):
        return self.decision.evaluate(experiment_id)

    def reallocate(self, experiment_id: str) -> Optional[AllocationResult]:
        return self.decision.reallocate(experiment_id)

    def run_cycle(self) -> Dict[str, str]:
        return self.decision.run_cycle()

    def conversion_funnel(self, experiment_id: str, steps: Sequence[str]) -> pd.DataFrame:
        self.flush(experiment_id)
        return self.aggregator.conversion_funnel(experiment_id, steps)

    def cohort_analysis(self, experiment_id: str, period: str = "weekly") -> pd.DataFrame:
        self.flush(experiment_id)
        return self.aggregator.cohort_analysis(experiment_id, period)

    def daily_trends(self, experiment_id: str) -> pd.DataFrame:
        self.flush(experiment_id)
        return self.aggregator.daily_trends(experiment_id)

    def query_events(
        self,
        experiment_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> pd.DataFrame:
        self.flush(experiment_id)
        return self.aggregator.event_store.query(experiment_id, start, end)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def flush(self, experiment_id: Optional[str] = None) -> int:
        return self.aggregator.flush(experiment_id)

    def start_background(self) -> None:
        self.scheduler.start()

    def stop_background(self, wait: bool = True) -> None:
        self.scheduler.stop(wait)
