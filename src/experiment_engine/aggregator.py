"""
Event aggregation: batching, live per-variant counters and cold-path
funnel/cohort/trend analyses over raw events.

Events are buffered per experiment and flushed at a batch size or after a
flush interval. A flush updates the in-memory AggregateMetrics first, then
appends the batch to the event store. Counters are near-real-time; the store
append is the durability boundary.

Deduplication follows the store: an experiment's counters and the ids they
already contain are loaded (snapshot or event log) before its first event is
accepted, so a restarted aggregator never folds in an id twice.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Set

import pandas as pd

from .config import EngineConfig
from .errors import StoreError, ValidationError
from .event_store import frame_to_events
from .schema import AggregateMetrics, Event, EventType, GoalMetrics
from .stores import AggregateCache, EventStore

logger = logging.getLogger(__name__)

CONVERSION_EVENT_TYPES = (EventType.CONVERSION, EventType.PURCHASE)
GOAL_EVENT_TYPES = (EventType.CONVERSION, EventType.PURCHASE, EventType.GOAL)
DEFAULT_GOAL_ID = "primary"
COHORT_PERIODS = {"daily": "D", "weekly": "W", "monthly": "M"}

FlushListener = Callable[[str, List[Event]], None]


def goal_id_for(event: Event) -> str:
    return str(event.properties.get("goal_id") or DEFAULT_GOAL_ID)


def apply_event(metrics: AggregateMetrics, event: Event) -> bool:
    """
    Fold one event into an arm's counters.

    Returns:
        False if the event id was already counted and nothing changed
    """
    if event.event_id in metrics.event_ids:
        return False
    metrics.event_ids.add(event.event_id)

    event_type = event.event_type.value
    metrics.event_counts[event_type] = metrics.event_counts.get(event_type, 0) + 1

    if event.event_type == EventType.EXPOSURE:
        if event.user_id not in metrics.exposed_users:
            metrics.exposed_users.add(event.user_id)
            metrics.participants += 1
        return True

    if event.event_type in CONVERSION_EVENT_TYPES and event.user_id not in metrics.converted_users:
        metrics.converted_users.add(event.user_id)
        metrics.conversions += 1
    if event.value is not None:
        metrics.revenue_total += float(event.value)

    if event.event_type in GOAL_EVENT_TYPES:
        goal_id = goal_id_for(event)
        goal = metrics.goals.get(goal_id)
        if goal is None:
            goal = GoalMetrics(goal_id, metrics.variant_id)
            metrics.goals[goal_id] = goal
        goal.record(event)
    return True


def _snapshot_key(experiment_id: str) -> str:
    return f"aggregates:{experiment_id}"


class EventAggregator:
    """
    Buffers events and maintains AggregateMetrics per (experiment, variant).

    Args:
        event_store: Durable event log
        aggregate_cache: Optional snapshot cache for cold starts
        config: Batch size, flush and persist intervals
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        event_store: EventStore,
        aggregate_cache: Optional[AggregateCache] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.event_store = event_store
        self.aggregate_cache = aggregate_cache
        self.config = config or EngineConfig()
        self._clock = clock

        self._buffers: Dict[str, List[Event]] = {}
        self._buffer_started: Dict[str, float] = {}
        # Counted in memory but not yet acknowledged by the store
        self._pending: Dict[str, List[Event]] = {}
        self._metrics: Dict[str, Dict[str, AggregateMetrics]] = {}
        # Per experiment: ids counted, buffered or pending
        self._seen_ids: Dict[str, Set[str]] = {}
        self._last_persist = clock()
        self._listeners: List[FlushListener] = []

        self._buffer_lock = threading.Lock()
        self._metrics_lock = threading.RLock()
        self._flush_lock = threading.Lock()

    def add_flush_listener(self, listener: FlushListener) -> None:
        """Call ``listener(experiment_id, events)`` after counters are updated."""
        self._listeners.append(listener)

    def track(self, event: Event) -> bool:
        """
        Buffer an event; flushes its experiment when the batch is full.

        Returns:
            False if the event id was a duplicate and was dropped.
        """
        with self._metrics_lock:
            self._load_metrics(event.experiment_id)

        with self._buffer_lock:
            seen = self._seen_ids.setdefault(event.experiment_id, set())
            if event.event_id in seen:
                logger.debug(f"Dropping duplicate event {event.event_id}")
                return False
            seen.add(event.event_id)
            buffer = self._buffers.setdefault(event.experiment_id, [])
            if not buffer:
                self._buffer_started[event.experiment_id] = self._clock()
            buffer.append(event)
            full = len(buffer) >= self.config.batch_size

        if full:
            self.flush(event.experiment_id)
        return True

    def track_many(self, events: Sequence[Event]) -> int:
        return sum(1 for e in events if self.track(e))

    def pending_count(self, experiment_id: Optional[str] = None) -> int:
        """Buffered plus unacknowledged events."""
        with self._buffer_lock:
            if experiment_id is not None:
                return len(self._buffers.get(experiment_id, [])) + len(
                    self._pending.get(experiment_id, [])
                )
            return sum(len(b) for b in self._buffers.values()) + sum(
                len(p) for p in self._pending.values()
            )

    def flush(self, experiment_id: Optional[str] = None) -> int:
        """
        Flush one experiment's buffer (or all buffers).

        Counters are updated before the store append. If the append fails the
        batch stays pending, is retried on the next flush, and StoreError is
        raised.

        Returns:
            Number of events written to the store
        """
        with self._buffer_lock:
            ids = [experiment_id] if experiment_id is not None else list(
                set(self._buffers) | set(self._pending)
            )
        written = 0
        errors = []
        for exp_id in ids:
            try:
                written += self._flush_experiment(exp_id)
            except StoreError as e:
                errors.append(e)
        if errors:
            raise errors[0]
        return written

    def flush_due(self) -> int:
        """Flush buffers older than the flush interval and retry pending writes."""
        now = self._clock()
        with self._buffer_lock:
            due = [
                exp_id
                for exp_id, started in self._buffer_started.items()
                if self._buffers.get(exp_id)
                and now - started >= self.config.flush_interval_seconds
            ]
            due.extend(exp_id for exp_id, p in self._pending.items() if p and exp_id not in due)
        written = 0
        for exp_id in due:
            written += self.flush(exp_id)
        return written

    def _flush_experiment(self, experiment_id: str) -> int:
        with self._flush_lock:
            return self._flush_locked(experiment_id)

    def _flush_locked(self, experiment_id: str) -> int:
        with self._buffer_lock:
            batch = self._buffers.pop(experiment_id, [])
            self._buffer_started.pop(experiment_id, None)

        applied: List[Event] = []
        if batch:
            with self._metrics_lock:
                arms = self._load_metrics(experiment_id)
                for event in batch:
                    metrics = arms.get(event.variant_id)
                    if metrics is None:
                        metrics = AggregateMetrics(experiment_id, event.variant_id)
                        arms[event.variant_id] = metrics
                    if apply_event(metrics, event):
                        applied.append(event)

        # Queued before listeners run so a failing listener cannot lose the batch
        with self._buffer_lock:
            pending = self._pending.setdefault(experiment_id, [])
            pending.extend(applied)
            to_write = list(pending)

        if applied:
            for listener in self._listeners:
                try:
                    listener(experiment_id, applied)
                except Exception:
                    logger.exception(f"Flush listener failed for {experiment_id}")

        if not to_write:
            with self._buffer_lock:
                if not self._pending.get(experiment_id):
                    self._pending.pop(experiment_id, None)
            return 0

        try:
            self.event_store.append(to_write)
        except StoreError:
            logger.error(
                f"Event store append failed for {experiment_id}; "
                f"{len(to_write)} events kept for retry"
            )
            raise

        with self._buffer_lock:
            del self._pending[experiment_id][: len(to_write)]
            if not self._pending[experiment_id]:
                del self._pending[experiment_id]
        logger.info(f"Flushed {len(to_write)} events for {experiment_id}")
        return len(to_write)

    def _load_metrics(self, experiment_id: str) -> Dict[str, AggregateMetrics]:
        """
        In-memory arms for an experiment, loading from cache or events on a miss.

        Loading also seeds the experiment's seen ids with every id the loaded
        counters contain. Callers hold the metrics lock.
        """
        arms = self._metrics.get(experiment_id)
        if arms is not None:
            return arms

        snapshot = self.aggregate_cache.get(_snapshot_key(experiment_id)) if self.aggregate_cache else None
        if snapshot:
            arms = {vid: AggregateMetrics.from_dict(d) for vid, d in snapshot.items()}
            logger.info(f"Loaded aggregate snapshot for {experiment_id} from cache")
        else:
            arms = self._rebuild(experiment_id)
        self._metrics[experiment_id] = arms

        with self._buffer_lock:
            seen = self._seen_ids.setdefault(experiment_id, set())
            for metrics in arms.values():
                seen.update(metrics.event_ids)
        return arms

    def _rebuild(self, experiment_id: str) -> Dict[str, AggregateMetrics]:
        df = self.event_store.query(experiment_id)
        arms: Dict[str, AggregateMetrics] = {}
        if df.empty:
            return arms
        df = df.sort_values("timestamp", kind="mergesort")
        for event in frame_to_events(df):
            metrics = arms.setdefault(
                event.variant_id, AggregateMetrics(experiment_id, event.variant_id)
            )
            apply_event(metrics, event)
        logger.info(f"Rebuilt aggregates for {experiment_id} from {len(df)} events")
        return arms

    def get_metrics(self, experiment_id: str) -> Dict[str, AggregateMetrics]:
        """
        Current counters per variant (read-through: memory, cache, event store).

        Returns:
            Dict of variant_id -> AggregateMetrics copy
        """
        with self._metrics_lock:
            arms = self._load_metrics(experiment_id)
            return {
                vid: AggregateMetrics.from_dict(m.to_dict(include_users=True))
                for vid, m in arms.items()
            }

    def persist_snapshots(self, force: bool = False) -> int:
        """
        Write every experiment's counters to the aggregate cache.

        Throttled to once per persist interval unless ``force`` is set.

        Returns:
            Number of experiments persisted
        """
        if self.aggregate_cache is None:
            return 0
        now = self._clock()
        if not force and now - self._last_persist < self.config.persist_interval_seconds:
            return 0
        with self._metrics_lock:
            snapshots = {
                exp_id: {vid: m.to_dict(include_users=True) for vid, m in arms.items()}
                for exp_id, arms in self._metrics.items()
            }
        for exp_id, snapshot in snapshots.items():
            self.aggregate_cache.set(
                _snapshot_key(exp_id), snapshot, self.config.aggregate_cache_ttl_seconds
            )
        self._last_persist = now
        logger.info(f"Persisted aggregate snapshots for {len(snapshots)} experiments")
        return len(snapshots)

    def get_goal_metrics(
        self, experiment_id: str, goal_id: str, variant_id: str
    ) -> Optional[GoalMetrics]:
        """Counters for one goal on one arm, or None if the goal was never hit."""
        with self._metrics_lock:
            metrics = self._load_metrics(experiment_id).get(variant_id)
            goal = metrics.goals.get(goal_id) if metrics is not None else None
            return GoalMetrics.from_dict(goal.to_dict(include_users=True)) if goal else None

    def get_goal_results(self, experiment_id: str) -> Dict[str, Dict[str, GoalMetrics]]:
        """
        Every goal's counters for an experiment.

        Returns:
            Dict of goal_id -> variant_id -> GoalMetrics copy
        """
        results: Dict[str, Dict[str, GoalMetrics]] = {}
        for variant_id, metrics in self.get_metrics(experiment_id).items():
            for goal_id, goal in metrics.goals.items():
                results.setdefault(goal_id, {})[variant_id] = goal
        return results

    def discard(self, experiment_id: str) -> None:
        """Drop in-memory counters for an experiment (the event log is kept)."""
        with self._metrics_lock:
            self._metrics.pop(experiment_id, None)
        with self._buffer_lock:
            in_flight = self._buffers.get(experiment_id, []) + self._pending.get(experiment_id, [])
            self._seen_ids[experiment_id] = {e.event_id for e in in_flight}
        if self.aggregate_cache is not None:
            self.aggregate_cache.invalidate(_snapshot_key(experiment_id))

    # ------------------------------------------------------------------
    # Cold-path analyses over raw events
    # ------------------------------------------------------------------

    def conversion_funnel(self, experiment_id: str, steps: Sequence[str]) -> pd.DataFrame:
        """
        Strictly ordered multi-step funnel per variant.

        A user reaches step k when they have an event matching it (by
        event_name or event_type) at or after the time they reached step k-1.

        Args:
            experiment_id: Experiment identifier
            steps: Ordered step names

        Returns:
            DataFrame with variant_id, step_index, step, users,
            rate_from_start, rate_from_previous and dropoff (percent)
        """
        if not steps:
            raise ValidationError("Funnel needs at least one step")
        columns = [
            "variant_id", "step_index", "step", "users",
            "rate_from_start", "rate_from_previous", "dropoff",
        ]
        df = self.event_store.query(experiment_id)
        if df.empty:
            return pd.DataFrame(columns=columns)

        rows = []
        reached: Optional[pd.DataFrame] = None
        for index, step in enumerate(steps):
            matches = df[(df["event_name"] == step) | (df["event_type"] == step)]
            matches = matches[["variant_id", "user_id", "timestamp"]]
            if reached is not None:
                matches = matches.merge(reached, on=["variant_id", "user_id"])
                matches = matches[matches["timestamp"] >= matches["reached_at"]]
                matches = matches.drop(columns="reached_at")
            reached = (
                matches.groupby(["variant_id", "user_id"], as_index=False)["timestamp"]
                .min()
                .rename(columns={"timestamp": "reached_at"})
            )
            counts = reached.groupby("variant_id")["user_id"].nunique()
            for variant_id in sorted(df["variant_id"].unique()):
                rows.append({
                    "variant_id": variant_id,
                    "step_index": index,
                    "step": step,
                    "users": int(counts.get(variant_id, 0)),
                })

        funnel = pd.DataFrame(rows, columns=columns[:4])
        first = funnel.groupby("variant_id")["users"].transform("first")
        previous = funnel.groupby("variant_id")["users"].shift(1).fillna(funnel["users"])
        funnel["rate_from_start"] = (funnel["users"] / first.where(first > 0)).fillna(0.0)
        funnel["rate_from_previous"] = (funnel["users"] / previous.where(previous > 0)).fillna(0.0)
        funnel["dropoff"] = ((1 - funnel["rate_from_previous"]) * 100).where(
            funnel["step_index"] > 0, 0.0
        )
        return funnel

    def cohort_analysis(self, experiment_id: str, period: str = "weekly") -> pd.DataFrame:
        """
        Conversion and revenue by exposure cohort.

        Users are grouped by the period of their first exposure; conversions
        and revenue are attributed to that cohort.

        Args:
            experiment_id: Experiment identifier
            period: 'daily', 'weekly' or 'monthly'

        Returns:
            DataFrame with cohort, variant_id, users, conversions,
            conversion_rate, revenue, revenue_per_user
        """
        if period not in COHORT_PERIODS:
            raise ValidationError(
                f"period must be one of {', '.join(COHORT_PERIODS)}, got '{period}'"
            )
        columns = [
            "cohort", "variant_id", "users", "conversions",
            "conversion_rate", "revenue", "revenue_per_user",
        ]
        df = self.event_store.query(experiment_id)
        exposures = df[df["event_type"] == EventType.EXPOSURE.value] if not df.empty else df
        if exposures.empty:
            return pd.DataFrame(columns=columns)

        first = exposures.groupby(["variant_id", "user_id"], as_index=False)["timestamp"].min()
        first["cohort"] = (
            first["timestamp"].dt.tz_localize(None).dt.to_period(COHORT_PERIODS[period]).astype(str)
        )

        outcomes = df[df["event_type"] != EventType.EXPOSURE.value]
        converted = (
            outcomes[outcomes["event_type"].isin([t.value for t in CONVERSION_EVENT_TYPES])]
            .drop_duplicates(["variant_id", "user_id"])[["variant_id", "user_id"]]
            .assign(converted=1)
        )
        revenue = outcomes.groupby(["variant_id", "user_id"], as_index=False)["value"].sum()

        users = first.merge(converted, on=["variant_id", "user_id"], how="left")
        users = users.merge(revenue, on=["variant_id", "user_id"], how="left")
        users[["converted", "value"]] = users[["converted", "value"]].fillna(0)

        cohorts = users.groupby(["cohort", "variant_id"], as_index=False).agg(
            users=("user_id", "nunique"),
            conversions=("converted", "sum"),
            revenue=("value", "sum"),
        )
        cohorts["conversions"] = cohorts["conversions"].astype(int)
        cohorts["conversion_rate"] = cohorts["conversions"] / cohorts["users"]
        cohorts["revenue_per_user"] = cohorts["revenue"] / cohorts["users"]
        return cohorts[columns].sort_values(["cohort", "variant_id"]).reset_index(drop=True)

    def daily_trends(self, experiment_id: str) -> pd.DataFrame:
        """
        Daily exposures, converting users and revenue per variant.

        Returns:
            DataFrame with date, variant_id, exposures, conversions,
            conversion_rate, revenue
        """
        columns = ["date", "variant_id", "exposures", "conversions", "conversion_rate", "revenue"]
        df = self.event_store.query(experiment_id)
        if df.empty:
            return pd.DataFrame(columns=columns)

        df = df.assign(date=df["timestamp"].dt.date)
        is_exposure = df["event_type"] == EventType.EXPOSURE.value
        is_conversion = df["event_type"].isin([t.value for t in CONVERSION_EVENT_TYPES])

        keys = ["date", "variant_id"]
        exposures = df[is_exposure].groupby(keys)["user_id"].nunique().rename("exposures")
        conversions = df[is_conversion].groupby(keys)["user_id"].nunique().rename("conversions")
        revenue = df[~is_exposure].groupby(keys)["value"].sum().rename("revenue")

        trends = pd.concat([exposures, conversions, revenue], axis=1).fillna(0).reset_index()
        trends["exposures"] = trends["exposures"].astype(int)
        trends["conversions"] = trends["conversions"].astype(int)
        trends["conversion_rate"] = (
            trends["conversions"] / trends["exposures"].where(trends["exposures"] > 0)
        ).fillna(0.0)
        return trends[columns].sort_values(keys).reset_index(drop=True)
