"""Tests for event batching, live counters and raw-event analyses."""
import logging
import random
from datetime import datetime, timedelta, timezone

import pytest

from src.experiment_engine.aggregator import EventAggregator
from src.experiment_engine.config import EngineConfig
from src.experiment_engine.errors import StoreError, ValidationError
from src.experiment_engine.event_store import InMemoryEventStore
from src.experiment_engine.schema import Event, EventType
from src.experiment_engine.stores import InMemoryAggregateCache

T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FlakyEventStore(InMemoryEventStore):
    """Event store whose appends fail until ``fail`` is cleared."""

    def __init__(self):
        super().__init__()
        self.fail = True

    def append(self, events):
        if self.fail:
            raise StoreError("event store unavailable")
        return super().append(events)


def _event(user, event_type=EventType.EXPOSURE, variant="control", value=None, name="", at=T0, props=None):
    return Event(
        experiment_id="exp_1",
        variant_id=variant,
        user_id=user,
        event_type=event_type,
        event_name=name or event_type.value,
        value=value,
        timestamp=at,
        properties=props or {},
    )


@pytest.fixture
def clock():
    return FakeClock()


def test_flush_at_batch_size(clock):
    """Buffer is written once batch_size events are tracked."""
    store = InMemoryEventStore()
    agg = EventAggregator(store, config=EngineConfig(batch_size=3), clock=clock)
    agg.track(_event("u1"))
    agg.track(_event("u2"))
    assert store.query("exp_1").empty
    assert agg.pending_count("exp_1") == 2
    agg.track(_event("u3"))
    assert len(store.query("exp_1")) == 3
    assert agg.pending_count() == 0


def test_flush_due_after_interval(clock):
    store = InMemoryEventStore()
    agg = EventAggregator(store, config=EngineConfig(flush_interval_seconds=5.0), clock=clock)
    agg.track(_event("u1"))
    clock.now = 4.0
    assert agg.flush_due() == 0
    clock.now = 5.0
    assert agg.flush_due() == 1
    assert len(store.query("exp_1")) == 1


def test_counters_distinct_users_and_revenue():
    agg = EventAggregator(InMemoryEventStore())
    agg.track_many([
        _event("u1"),
        _event("u2"),
        _event("u1", EventType.CONVERSION, value=10.0),
        _event("u1", EventType.CONVERSION, value=5.0),
        _event("u2", EventType.PURCHASE, value=20.0),
        _event("u2", EventType.CUSTOM, name="click"),
    ])
    agg.flush()
    m = agg.get_metrics("exp_1")["control"]
    assert m.participants == 2
    assert m.conversions == 2
    assert m.revenue_total == pytest.approx(35.0)
    assert m.conversion_rate == pytest.approx(1.0)
    assert m.event_counts == {"exposure": 2, "conversion": 2, "purchase": 1, "custom": 1}


def test_repeat_exposure_counted_once():
    agg = EventAggregator(InMemoryEventStore())
    agg.track(_event("u1"))
    agg.track(_event("u1"))
    agg.flush()
    m = agg.get_metrics("exp_1")["control"]
    assert m.participants == 1
    assert m.event_counts["exposure"] == 2


def test_duplicate_event_id_dropped():
    store = InMemoryEventStore()
    agg = EventAggregator(store)
    evt = _event("u1", EventType.CONVERSION, value=10.0)
    assert agg.track(evt)
    assert not agg.track(evt)
    agg.flush()
    assert len(store.query("exp_1")) == 1
    assert agg.get_metrics("exp_1")["control"].revenue_total == pytest.approx(10.0)


def test_store_failure_keeps_events_for_retry(clock):
    """Counters update before the append; failed batches are retried once."""
    store = FlakyEventStore()
    agg = EventAggregator(store, clock=clock)
    agg.track(_event("u1"))
    agg.track(_event("u2", variant="treatment"))

    with pytest.raises(StoreError):
        agg.flush()
    metrics = agg.get_metrics("exp_1")
    assert metrics["control"].participants == 1
    assert metrics["treatment"].participants == 1
    assert agg.pending_count("exp_1") == 2

    store.fail = False
    assert agg.flush_due() == 2
    assert agg.pending_count() == 0
    assert len(store.query("exp_1")) == 2
    assert agg.get_metrics("exp_1")["control"].participants == 1


def test_flush_listener_called():
    calls = []
    agg = EventAggregator(InMemoryEventStore())
    agg.add_flush_listener(lambda exp_id, events: calls.append((exp_id, len(events))))
    agg.track(_event("u1"))
    agg.flush()
    assert calls == [("exp_1", 1)]


def test_rebuild_from_event_store():
    """A fresh aggregator recomputes counters from the event log."""
    store = InMemoryEventStore()
    agg = EventAggregator(store)
    stored = _event("u1", EventType.PURCHASE, value=12.5)
    agg.track_many([_event("u1"), stored])
    agg.flush()

    fresh = EventAggregator(store)
    m = fresh.get_metrics("exp_1")["control"]
    assert m.participants == 1
    assert m.conversions == 1
    assert m.revenue_total == pytest.approx(12.5)
    assert not fresh.track(stored)


def test_snapshot_persist_and_cold_start(clock):
    cache = InMemoryAggregateCache()
    agg = EventAggregator(InMemoryEventStore(), cache, EngineConfig(persist_interval_seconds=30.0), clock)
    agg.track_many([_event("u1"), _event("u2")])
    agg.flush()

    assert agg.persist_snapshots() == 0
    clock.now = 30.0
    assert agg.persist_snapshots() == 1

    # Empty event log: counters can only come from the snapshot
    cold = EventAggregator(InMemoryEventStore(), cache)
    assert cold.get_metrics("exp_1")["control"].participants == 2


def test_persist_force():
    cache = InMemoryAggregateCache()
    agg = EventAggregator(InMemoryEventStore(), cache)
    agg.track(_event("u1"))
    agg.flush()
    assert agg.persist_snapshots(force=True) == 1
    agg.discard("exp_1")
    assert cache.get("aggregates:exp_1") is None


def test_conversion_funnel_strict_order():
    agg = EventAggregator(InMemoryEventStore())
    minute = timedelta(minutes=1)
    agg.track_many([
        _event("u1", EventType.CUSTOM, name="view", at=T0),
        _event("u1", EventType.CUSTOM, name="cart", at=T0 + minute),
        _event("u1", EventType.PURCHASE, name="purchase", value=30.0, at=T0 + 2 * minute),
        _event("u2", EventType.CUSTOM, name="view", at=T0),
        _event("u2", EventType.PURCHASE, name="purchase", value=10.0, at=T0 + minute),
        # cart before view does not count
        _event("u3", EventType.CUSTOM, name="cart", at=T0),
        _event("u3", EventType.CUSTOM, name="view", at=T0 + minute),
    ])
    agg.flush()

    funnel = agg.conversion_funnel("exp_1", ["view", "cart", "purchase"])
    assert list(funnel["users"]) == [3, 1, 1]
    assert list(funnel["rate_from_start"]) == pytest.approx([1.0, 1 / 3, 1 / 3])
    assert list(funnel["rate_from_previous"]) == pytest.approx([1.0, 1 / 3, 1.0])
    assert list(funnel["dropoff"]) == pytest.approx([0.0, 200 / 3, 0.0])


def test_conversion_funnel_requires_steps():
    agg = EventAggregator(InMemoryEventStore())
    with pytest.raises(ValidationError):
        agg.conversion_funnel("exp_1", [])


def test_cohort_analysis_daily():
    agg = EventAggregator(InMemoryEventStore())
    day = timedelta(days=1)
    agg.track_many([
        _event("u1", at=T0),
        _event("u2", at=T0 + day),
        _event("u1", EventType.PURCHASE, value=10.0, at=T0 + 2 * day),
    ])
    agg.flush()

    cohorts = agg.cohort_analysis("exp_1", period="daily")
    assert list(cohorts["cohort"]) == ["2026-01-05", "2026-01-06"]
    assert list(cohorts["users"]) == [1, 1]
    assert list(cohorts["conversions"]) == [1, 0]
    assert list(cohorts["revenue"]) == pytest.approx([10.0, 0.0])
    assert list(cohorts["revenue_per_user"]) == pytest.approx([10.0, 0.0])


def test_cohort_analysis_invalid_period():
    agg = EventAggregator(InMemoryEventStore())
    with pytest.raises(ValidationError):
        agg.cohort_analysis("exp_1", period="hourly")


def test_daily_trends():
    agg = EventAggregator(InMemoryEventStore())
    day = timedelta(days=1)
    agg.track_many([
        _event("u1", at=T0),
        _event("u2", at=T0 + day),
        _event("u1", EventType.PURCHASE, value=10.0, at=T0 + 2 * day),
    ])
    agg.flush()

    trends = agg.daily_trends("exp_1")
    assert len(trends) == 3
    assert trends["exposures"].sum() == 2
    assert trends["conversions"].sum() == 1
    assert trends["revenue"].sum() == pytest.approx(10.0)
    assert trends["conversion_rate"].iloc[-1] == 0.0


def test_empty_analyses():
    agg = EventAggregator(InMemoryEventStore())
    assert agg.conversion_funnel("exp_1", ["view"]).empty
    assert agg.cohort_analysis("exp_1").empty
    assert agg.daily_trends("exp_1").empty


def test_restart_does_not_recount_stored_event():
    """Re-tracking an id already in the event log leaves counters unchanged."""
    store = InMemoryEventStore()
    first = EventAggregator(store)
    evt = _event("u1", EventType.PURCHASE, value=10.0)
    first.track(evt)
    first.flush()

    restarted = EventAggregator(store)
    assert not restarted.track(evt)
    restarted.flush()
    m = restarted.get_metrics("exp_1")["control"]
    assert m.revenue_total == pytest.approx(10.0)
    assert m.event_counts == {"purchase": 1}
    assert len(store.query("exp_1")) == 1


def test_snapshot_cold_start_does_not_recount_event():
    """Snapshots carry counted ids, so a cold start still drops duplicates."""
    cache = InMemoryAggregateCache()
    store = InMemoryEventStore()
    first = EventAggregator(store, cache)
    evt = _event("u1", EventType.PURCHASE, value=10.0)
    first.track(evt)
    first.flush()
    first.persist_snapshots(force=True)
    assert evt.event_id in cache.get("aggregates:exp_1")["control"]["event_ids"]

    cold = EventAggregator(store, cache)
    assert not cold.track(evt)
    cold.flush()
    m = cold.get_metrics("exp_1")["control"]
    assert m.revenue_total == pytest.approx(10.0)
    assert m.event_counts == {"purchase": 1}
    assert len(store.query("exp_1")) == 1


def _summary(metrics):
    return {
        vid: (m.participants, m.conversions, round(m.revenue_total, 6))
        for vid, m in metrics.items()
    }


def test_counters_independent_of_arrival_order():
    """Shuffled events across several batches give the in-order counters."""
    minute = timedelta(minutes=1)
    purchase = _event("u1", EventType.PURCHASE, value=10.0, at=T0 + minute)
    events = [
        _event("u1", at=T0),
        purchase,
        _event("u2", at=T0 + 2 * minute),
        _event("u2", EventType.CONVERSION, value=5.0, at=T0 + 3 * minute),
        _event("u3", variant="treatment", at=T0 + minute),
        _event("u3", EventType.PURCHASE, variant="treatment", value=7.5, at=T0 + 4 * minute),
        _event("u4", variant="treatment", at=T0 + 5 * minute),
        _event("u1", EventType.CUSTOM, name="click", at=T0 + 6 * minute),
    ]
    in_order = EventAggregator(InMemoryEventStore())
    in_order.track_many(events)
    in_order.flush()

    shuffled = [e for e in events if e is not purchase]
    random.Random(11).shuffle(shuffled)
    # the purchase arrives before the exposure it follows
    shuffled.insert(0, purchase)
    store = InMemoryEventStore()
    out_of_order = EventAggregator(store, config=EngineConfig(batch_size=3))
    out_of_order.track_many(shuffled)
    out_of_order.flush()

    expected = _summary(in_order.get_metrics("exp_1"))
    assert expected == {"control": (2, 2, 15.0), "treatment": (2, 1, 7.5)}
    assert _summary(out_of_order.get_metrics("exp_1")) == expected
    assert _summary(EventAggregator(store).get_metrics("exp_1")) == expected


def test_failing_listener_keeps_batch(caplog):
    """A listener error is logged; the batch still reaches the store."""
    store = InMemoryEventStore()
    agg = EventAggregator(store)
    calls = []

    def exploding_listener(exp_id, events):
        raise RuntimeError("listener exploded")

    agg.add_flush_listener(exploding_listener)
    agg.add_flush_listener(lambda exp_id, events: calls.append(len(events)))
    agg.track(_event("u1"))
    with caplog.at_level(logging.ERROR):
        assert agg.flush() == 1
    assert len(store.query("exp_1")) == 1
    assert agg.pending_count() == 0
    assert calls == [1]
    assert "Flush listener failed for exp_1" in caplog.text


def test_goal_metrics_grouped_by_goal_id():
    """Conversion-type events are counted per goal; no goal_id means primary."""
    minute = timedelta(minutes=1)
    signup = {"goal_id": "signup"}
    store = InMemoryEventStore()
    agg = EventAggregator(store)
    agg.track_many([
        _event("u1"),
        _event("u2"),
        _event("u1", EventType.GOAL, name="goal_signup", value=5.0, at=T0 + 2 * minute, props=signup),
        _event("u2", EventType.GOAL, name="goal_signup", value=15.0, at=T0 + minute, props=signup),
        _event("u1", EventType.GOAL, name="goal_signup", at=T0 + 3 * minute, props=signup),
        _event("u1", EventType.CONVERSION, value=20.0, at=T0 + 4 * minute),
        _event("u2", EventType.CUSTOM, name="click", at=T0 + 5 * minute),
    ])
    agg.flush()

    goal = agg.get_goal_metrics("exp_1", "signup", "control")
    assert goal.total_events == 3
    assert goal.unique_users == 2
    assert goal.total_value == pytest.approx(20.0)
    assert goal.average_value == pytest.approx(20.0 / 3)
    assert goal.goal_name == "goal_signup"
    assert goal.first_conversion_time == T0 + minute
    assert goal.last_conversion_time == T0 + 3 * minute

    primary = agg.get_goal_metrics("exp_1", "primary", "control")
    assert (primary.total_events, primary.unique_users) == (1, 1)
    assert primary.total_value == pytest.approx(20.0)

    m = agg.get_metrics("exp_1")["control"]
    # goal hits feed goal metrics and revenue, not the primary conversion count
    assert m.conversions == 1
    assert m.revenue_total == pytest.approx(40.0)
    assert m.goal_conversion_rate("signup") == pytest.approx(1.0)
    assert set(agg.get_goal_results("exp_1")) == {"signup", "primary"}
    assert agg.get_goal_metrics("exp_1", "missing", "control") is None
    assert agg.get_goal_metrics("exp_1", "signup", "treatment") is None

    rebuilt = EventAggregator(store).get_goal_metrics("exp_1", "signup", "control")
    assert rebuilt.to_dict() == goal.to_dict()
