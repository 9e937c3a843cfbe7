"""Tests for event stores."""
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.experiment_engine.aggregator import EventAggregator
from src.experiment_engine.errors import StoreError
from src.experiment_engine.event_store import FileEventStore, InMemoryEventStore
from src.experiment_engine.schema import Event, EventType

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_experiment_dir():
    """Temporary directory for experiment data."""
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


def _events():
    hour = timedelta(hours=1)
    return [
        Event("exp_1", "control", "u1", EventType.EXPOSURE, event_name="exposure", timestamp=T0),
        Event("exp_1", "control", "u1", EventType.PURCHASE, event_name="purchase", value=42.0,
              timestamp=T0 + hour, properties={"sku": "A-1"}),
        Event("exp_1", "treatment", "007", EventType.EXPOSURE, event_name="exposure", timestamp=T0 + 2 * hour),
        Event("exp_2", "control", "u9", EventType.EXPOSURE, event_name="exposure", timestamp=T0),
    ]


@pytest.fixture(params=["memory", "file"])
def store(request, temp_experiment_dir):
    if request.param == "memory":
        return InMemoryEventStore()
    return FileEventStore(base_dir=temp_experiment_dir)


def test_append_and_query(store):
    accepted = store.append(_events())
    assert len(accepted) == 4
    df = store.query("exp_1")
    assert len(df) == 3
    assert set(df["variant_id"]) == {"control", "treatment"}
    assert len(store.query("exp_2")) == 1
    assert store.query("missing").empty


def test_append_skips_known_ids(store):
    events = _events()
    store.append(events)
    assert store.append(events[:2]) == []
    assert len(store.query("exp_1")) == 3


def test_query_window_and_type(store):
    store.append(_events())
    window = store.query("exp_1", start=T0 + timedelta(minutes=30), end=T0 + timedelta(hours=1))
    assert list(window["event_type"]) == ["purchase"]
    exposures = store.query("exp_1", event_type=EventType.EXPOSURE)
    assert len(exposures) == 2


def test_naive_window_treated_as_utc(store):
    store.append(_events())
    df = store.query("exp_1", start=datetime(2026, 3, 2, 10, 30))
    assert len(df) == 1


def test_file_store_preserves_fields(temp_experiment_dir):
    """Ids stay strings and properties survive the round trip to disk."""
    store = FileEventStore(base_dir=temp_experiment_dir)
    store.append(_events())
    df = FileEventStore(base_dir=temp_experiment_dir).query("exp_1")
    assert "007" in set(df["user_id"])
    purchase = df[df["event_type"] == "purchase"].iloc[0]
    assert purchase["value"] == pytest.approx(42.0)
    assert purchase["properties"] == {"sku": "A-1"}
    assert any(Path(temp_experiment_dir, "exp_1").glob("events.*"))


def test_file_store_rebuilds_aggregates(temp_experiment_dir):
    """A restarted aggregator recovers counters from files on disk."""
    agg = EventAggregator(FileEventStore(base_dir=temp_experiment_dir))
    agg.track_many(_events())
    agg.flush()

    restarted = EventAggregator(FileEventStore(base_dir=temp_experiment_dir))
    metrics = restarted.get_metrics("exp_1")
    assert metrics["control"].participants == 1
    assert metrics["control"].conversions == 1
    assert metrics["control"].revenue_total == pytest.approx(42.0)
    assert metrics["treatment"].participants == 1


def test_file_store_write_failure(temp_experiment_dir):
    """Write failures surface as retryable StoreError."""
    blocked = Path(temp_experiment_dir) / "blocked"
    blocked.write_text("not a directory")
    store = FileEventStore(base_dir=str(blocked))
    with pytest.raises(StoreError) as exc_info:
        store.append(_events())
    assert exc_info.value.retryable
