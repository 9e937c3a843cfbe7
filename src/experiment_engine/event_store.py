"""
Event stores for experiment exposures, conversions and custom events.

FileEventStore writes one parquet (or csv fallback) table per experiment under
data/experiments/<experiment_id>/. InMemoryEventStore keeps the same rows in
process. Both reject event ids they have already stored and return pandas
DataFrames from query().
"""

import json
import logging
import math
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pandas as pd

from .errors import StoreError
from .schema import Event, EventType
from .stores import EventStore

logger = logging.getLogger(__name__)

DEFAULT_STORE_DIR = "data/experiments"

EVENT_COLUMNS = [
    "event_id",
    "experiment_id",
    "variant_id",
    "user_id",
    "session_id",
    "event_type",
    "event_name",
    "value",
    "timestamp",
    "properties",
]
_ID_COLUMNS = ["event_id", "experiment_id", "variant_id", "user_id", "session_id"]

try:
    import pyarrow  # noqa: F401
    _USE_PARQUET = True
except ImportError:
    _USE_PARQUET = False


def _event_to_row(evt: Event) -> dict:
    return {
        "event_id": evt.event_id,
        "experiment_id": evt.experiment_id,
        "variant_id": evt.variant_id,
        "user_id": evt.user_id,
        "session_id": evt.session_id,
        "event_type": evt.event_type.value,
        "event_name": evt.event_name,
        "value": evt.value,
        "timestamp": evt.timestamp,
        "properties": evt.properties,
    }


def events_to_frame(events: Sequence[Event]) -> pd.DataFrame:
    """Build an events DataFrame with UTC timestamps."""
    df = pd.DataFrame([_event_to_row(e) for e in events], columns=EVENT_COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df["value"] = pd.to_numeric(df["value"], errors="coerce")
    return df


def frame_to_events(df: pd.DataFrame) -> List[Event]:
    """Rebuild Event records from an events DataFrame."""
    events = []
    for row in df.to_dict(orient="records"):
        value = row.get("value")
        if value is not None and isinstance(value, float) and math.isnan(value):
            value = None
        properties = row.get("properties")
        if isinstance(properties, str):
            properties = json.loads(properties) if properties else {}
        timestamp = row["timestamp"]
        if isinstance(timestamp, pd.Timestamp):
            timestamp = timestamp.to_pydatetime()
        events.append(
            Event(
                event_id=str(row["event_id"]),
                experiment_id=str(row["experiment_id"]),
                variant_id=str(row["variant_id"]),
                user_id=str(row["user_id"]),
                session_id=str(row.get("session_id") or "unknown"),
                event_type=EventType(row["event_type"]),
                event_name="" if pd.isna(row.get("event_name")) else str(row["event_name"]),
                value=value,
                timestamp=timestamp,
                properties=properties or {},
            )
        )
    return events


def _utc_timestamp(value: datetime) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts


def _filter_frame(
    df: pd.DataFrame,
    start: Optional[datetime],
    end: Optional[datetime],
    event_type: Optional[EventType],
) -> pd.DataFrame:
    if df.empty:
        return df
    if start is not None:
        df = df[df["timestamp"] >= _utc_timestamp(start)]
    if end is not None:
        df = df[df["timestamp"] <= _utc_timestamp(end)]
    if event_type is not None:
        df = df[df["event_type"] == EventType(event_type).value]
    return df.reset_index(drop=True)


class InMemoryEventStore(EventStore):
    def __init__(self):
        self._events: Dict[str, List[Event]] = {}
        self._seen_ids: Set[str] = set()
        self._lock = threading.Lock()

    def append(self, events: Sequence[Event]) -> List[Event]:
        accepted = []
        with self._lock:
            for evt in events:
                if evt.event_id in self._seen_ids:
                    continue
                self._seen_ids.add(evt.event_id)
                self._events.setdefault(evt.experiment_id, []).append(evt)
                accepted.append(evt)
        return accepted

    def query(
        self,
        experiment_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[EventType] = None,
    ) -> pd.DataFrame:
        with self._lock:
            events = list(self._events.get(experiment_id, []))
        return _filter_frame(events_to_frame(events), start, end, event_type)


class FileEventStore(EventStore):
    """
    Append-only table per experiment on the local filesystem.

    Args:
        base_dir: Base directory for experiment data
    """

    def __init__(self, base_dir: str = DEFAULT_STORE_DIR):
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()

    def _events_path(self, experiment_id: str) -> Path:
        ext = "parquet" if _USE_PARQUET else "csv"
        return self.base_dir / experiment_id / f"events.{ext}"

    def _read_table(self, path: Path) -> pd.DataFrame:
        if not path.exists():
            return pd.DataFrame(columns=EVENT_COLUMNS)
        try:
            if path.suffix == ".parquet":
                df = pd.read_parquet(path)
            else:
                df = pd.read_csv(path, dtype={col: str for col in _ID_COLUMNS})
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read events from {path}: {e}") from e
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df["value"] = pd.to_numeric(df["value"], errors="coerce")
        df["properties"] = df["properties"].apply(
            lambda p: json.loads(p) if isinstance(p, str) and p else {}
        )
        return df

    def _write_table(self, df: pd.DataFrame, path: Path) -> None:
        df = df.copy()
        df["properties"] = df["properties"].apply(json.dumps)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.suffix == ".parquet":
                df.to_parquet(path, index=False)
            else:
                df.to_csv(path, index=False)
        except OSError as e:
            raise StoreError(f"Failed to write events to {path}: {e}") from e

    def append(self, events: Sequence[Event]) -> List[Event]:
        """
        Append events to their experiments' tables.

        Args:
            events: Events to append (may span experiments)

        Returns:
            Events actually written (ids not already stored)
        """
        by_experiment: Dict[str, List[Event]] = {}
        for evt in events:
            by_experiment.setdefault(evt.experiment_id, []).append(evt)

        accepted: List[Event] = []
        with self._lock:
            for experiment_id, batch in by_experiment.items():
                path = self._events_path(experiment_id)
                df_existing = self._read_table(path)
                known = set(df_existing["event_id"].astype(str))

                new_events = []
                for evt in batch:
                    if evt.event_id in known:
                        continue
                    known.add(evt.event_id)
                    new_events.append(evt)
                if not new_events:
                    continue

                df_new = events_to_frame(new_events)
                if df_existing.empty:
                    df = df_new
                else:
                    df = pd.concat([df_existing, df_new], ignore_index=True)
                self._write_table(df, path)
                accepted.extend(new_events)
                logger.info(f"Appended {len(new_events)} events to {path}")
        return accepted

    def query(
        self,
        experiment_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[EventType] = None,
    ) -> pd.DataFrame:
        """
        Read events for an experiment, optionally filtered by time and type.

        Args:
            experiment_id: Experiment identifier
            start: Optional start of time window (inclusive)
            end: Optional end of time window (inclusive)
            event_type: Optional event type filter

        Returns:
            DataFrame with one row per event
        """
        with self._lock:
            df = self._read_table(self._events_path(experiment_id))
        return _filter_frame(df, start, end, event_type)
