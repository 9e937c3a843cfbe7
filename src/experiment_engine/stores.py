"""
Store interfaces for experiments, sticky assignments, events and aggregate
snapshots, with in-memory reference implementations.

Implementations raise StoreError for transient failures; callers surface it
to the request path unchanged.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .cache import TTLCache
from .errors import ExperimentNotFoundError
from .schema import Assignment, Event, EventType, Experiment, ExperimentStatus

logger = logging.getLogger(__name__)


class ExperimentStore(ABC):
    """Experiment definitions keyed by experiment_id."""

    @abstractmethod
    def get(self, experiment_id: str) -> Experiment:
        """Return a copy of the experiment or raise ExperimentNotFoundError."""

    @abstractmethod
    def save(self, experiment: Experiment) -> None:
        ...

    @abstractmethod
    def update_status(
        self,
        experiment_id: str,
        status: ExperimentStatus,
        **changes: Any,
    ) -> Experiment:
        """Set the status and any other top-level fields in one write."""

    @abstractmethod
    def update_traffic(self, experiment_id: str, allocation: Dict[str, float]) -> Experiment:
        """Rewrite variant traffic percentages (variant_id -> percent)."""

    @abstractmethod
    def list(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        ...


class AssignmentStore(ABC):
    """Sticky (experiment_id, user_id) -> variant_id mapping."""

    @abstractmethod
    def get(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        ...

    @abstractmethod
    def insert_if_absent(self, assignment: Assignment) -> Tuple[Assignment, bool]:
        """
        Compare-and-set insert.

        Returns:
            Tuple of (stored assignment, inserted). When another writer got
            there first the stored assignment is theirs and inserted is False.
        """

    @abstractmethod
    def delete(self, experiment_id: str, user_id: str) -> bool:
        ...


class EventStore(ABC):
    """Append-only event log; the durability boundary for tracked events."""

    @abstractmethod
    def append(self, events: Sequence[Event]) -> List[Event]:
        """Append events, skipping ids already stored. Returns the accepted events."""

    @abstractmethod
    def query(
        self,
        experiment_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[EventType] = None,
    ) -> pd.DataFrame:
        """Events for one experiment, optionally windowed by timestamp."""


class AggregateCache(ABC):
    """Snapshot cache for aggregate metrics (read-through, write-behind)."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def invalidate(self, key: str) -> None:
        ...


class InMemoryExperimentStore(ExperimentStore):
    def __init__(self):
        self._experiments: Dict[str, Experiment] = {}
        self._lock = threading.Lock()

    def get(self, experiment_id: str) -> Experiment:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
            return copy.deepcopy(experiment)

    def save(self, experiment: Experiment) -> None:
        with self._lock:
            self._experiments[experiment.experiment_id] = copy.deepcopy(experiment)

    def update_status(
        self,
        experiment_id: str,
        status: ExperimentStatus,
        **changes: Any,
    ) -> Experiment:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
            experiment.status = status
            for name, value in changes.items():
                setattr(experiment, name, value)
            return copy.deepcopy(experiment)

    def update_traffic(self, experiment_id: str, allocation: Dict[str, float]) -> Experiment:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
            for variant in experiment.variants:
                if variant.variant_id in allocation:
                    variant.traffic_percentage = float(allocation[variant.variant_id])
            return copy.deepcopy(experiment)

    def list(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._experiments.values()
                if status is None or e.status == status
            ]


class InMemoryAssignmentStore(AssignmentStore):
    def __init__(self):
        self._assignments: Dict[Tuple[str, str], Assignment] = {}
        self._lock = threading.Lock()

    def get(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        with self._lock:
            return self._assignments.get((experiment_id, user_id))

    def insert_if_absent(self, assignment: Assignment) -> Tuple[Assignment, bool]:
        key = (assignment.experiment_id, assignment.user_id)
        with self._lock:
            existing = self._assignments.get(key)
            if existing is not None:
                return existing, False
            self._assignments[key] = assignment
            return assignment, True

    def delete(self, experiment_id: str, user_id: str) -> bool:
        with self._lock:
            return self._assignments.pop((experiment_id, user_id), None) is not None

    def count(self, experiment_id: str) -> int:
        with self._lock:
            return sum(1 for exp_id, _ in self._assignments if exp_id == experiment_id)


class InMemoryAggregateCache(AggregateCache):
    """AggregateCache over a TTLCache; values are deep-copied in and out."""

    def __init__(self, ttl_seconds: float = 3600.0, cache: Optional[TTLCache] = None):
        self._cache = cache or TTLCache(ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._cache.get(key))

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._cache.set(key, copy.deepcopy(value), ttl_seconds)

    def invalidate(self, key: str) -> None:
        self._cache.invalidate(key)
