"""Experimentation engine: assignment, event aggregation, statistics, bandits and decisions."""

from .schema import (
    Experiment,
    ExperimentStatus,
    Variant,
    TargetingRule,
    StatisticalConfig,
    BanditConfig,
    Assignment,
    Event,
    EventType,
    AggregateMetrics,
    GoalMetrics,
    AnalysisResult,
    ExperimentAnalysis,
)
from .errors import (
    ExperimentError,
    ValidationError,
    SequentialTestingError,
    ExperimentStateError,
    ExperimentNotFoundError,
    StoreError,
)
from .config import EngineConfig
from .assignment import AssignmentEngine
from .aggregator import EventAggregator
from .bandit import BanditOptimizer, AllocationResult
from .decision import DecisionEngine, validate_experiment
from .analyze import analyze_experiment
from .service import ExperimentService
from .report import render_exec_summary, save_analysis

__all__ = [
    "Experiment",
    "ExperimentStatus",
    "Variant",
    "TargetingRule",
    "StatisticalConfig",
    "BanditConfig",
    "Assignment",
    "Event",
    "EventType",
    "AggregateMetrics",
    "GoalMetrics",
    "AnalysisResult",
    "ExperimentAnalysis",
    "ExperimentError",
    "ValidationError",
    "SequentialTestingError",
    "ExperimentStateError",
    "ExperimentNotFoundError",
    "StoreError",
    "EngineConfig",
    "AssignmentEngine",
    "EventAggregator",
    "BanditOptimizer",
    "AllocationResult",
    "DecisionEngine",
    "validate_experiment",
    "analyze_experiment",
    "ExperimentService",
    "render_exec_summary",
    "save_analysis",
]
