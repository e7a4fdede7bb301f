"""
JSON-backed store for the optimizer's persisted state.

Holds four tables under a data directory:

- lag_profiles.json: conversion-lag completion curves
- hierarchical_priors.json: learned empirical-Bayes priors keyed by prior_id
- feature_flags.json: rollout state keyed by flag name
- experiment_measurements.jsonl: append-only audit log of computed posteriors

Readers get a copy of the current snapshot without locking. Writers are
serialized on one lock, build the replacement table, persist it and swap the
reference, so a reader sees either the old or the new table.

The jsonl file keeps every measurement. In memory only the rows inside
measurement_window_days of the newest measurement are kept, which must cover
the longest window any reader queries.
"""

import copy
import json
import logging
import os
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

LAG_PROFILES = "lag_profiles"
HIERARCHICAL_PRIORS = "hierarchical_priors"
FEATURE_FLAGS = "feature_flags"
EXPERIMENT_MEASUREMENTS = "experiment_measurements"

MEASUREMENT_COLUMNS = [
    "measurement_id",
    "experiment_id",
    "arm_id",
    "measurement_date",
    "successes",
    "trials",
    "revenue_total",
    "lag_bucket",
    "days_since_impression",
    "is_lag_adjusted",
    "recency_weight",
    "effective_trials",
    "effective_successes",
    "alpha_posterior",
    "beta_posterior",
    "gamma_shape",
    "gamma_rate",
    "exploration_bonus",
    "uncertainty_penalty",
    "confidence_interval_lower",
    "confidence_interval_upper",
    "data_source",
    "created_at",
]


class OptimizationStore:
    """Snapshot-and-swap persistence for priors, lag profiles, flags and measurements."""

    def __init__(
        self,
        data_path: str = "data/optimizer",
        persist: bool = True,
        measurement_window_days: int = 90,
    ):
        self.data_path = data_path
        self.persist = persist
        self.measurement_window = pd.Timedelta(days=measurement_window_days)
        self._lock = threading.Lock()
        self._newest_measurement: Optional[pd.Timestamp] = None

        if self.persist:
            os.makedirs(self.data_path, exist_ok=True)

        self._tables: Dict[str, Any] = {
            LAG_PROFILES: self._read_json(LAG_PROFILES, []),
            HIERARCHICAL_PRIORS: self._read_json(HIERARCHICAL_PRIORS, {}),
            FEATURE_FLAGS: self._read_json(FEATURE_FLAGS, {}),
        }
        self._measurements: List[Dict[str, Any]] = []
        for row in self._read_measurements():
            self._add_measurement(row)

        logger.info(
            f"OptimizationStore loaded from {self.data_path}: "
            f"{len(self._tables[LAG_PROFILES])} lag profile points, "
            f"{len(self._tables[HIERARCHICAL_PRIORS])} priors, "
            f"{len(self._tables[FEATURE_FLAGS])} flags, "
            f"{len(self._measurements)} measurements"
        )

    def _path(self, name: str, extension: str = "json") -> str:
        return os.path.join(self.data_path, f"{name}.{extension}")

    def _read_json(self, name: str, default: Any) -> Any:
        if not self.persist:
            return default
        path = self._path(name)
        if not os.path.exists(path):
            return default
        with open(path, "r") as f:
            return json.load(f)

    def _write_json(self, name: str, data: Any):
        if not self.persist:
            return
        path = self._path(name)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, path)

    def _read_measurements(self) -> List[Dict[str, Any]]:
        if not self.persist:
            return []
        path = self._path(EXPERIMENT_MEASUREMENTS, "jsonl")
        if not os.path.exists(path):
            return []
        rows = []
        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    rows.append(json.loads(line))
        return rows

    # Snapshot tables

    def snapshot(self, table: str) -> Any:
        """Return a private copy of the current table."""
        return copy.deepcopy(self._tables[table])

    def replace(self, table: str, data: Any):
        """Persist and swap in a whole new table."""
        with self._lock:
            new_table = copy.deepcopy(data)
            self._write_json(table, new_table)
            self._tables[table] = new_table

    def update(self, table: str, mutator: Callable[[Any], Any]) -> Any:
        """
        Serialized read-modify-write of a table.

        The mutator receives a private copy of the current table and returns the
        replacement. If it raises, nothing is written and the current table is
        kept.
        """
        with self._lock:
            working = copy.deepcopy(self._tables[table])
            new_table = mutator(working)
            if new_table is None:
                new_table = working
            self._write_json(table, new_table)
            self._tables[table] = new_table
            return copy.deepcopy(new_table)

    # Measurement log

    def append_measurement(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Append one row to the measurement log. Historical rows are never rewritten."""
        record = {column: row.get(column) for column in MEASUREMENT_COLUMNS}
        if not record["created_at"]:
            record["created_at"] = datetime.now().isoformat()
        if not record["measurement_date"]:
            record["measurement_date"] = record["created_at"]
        if not record["data_source"]:
            record["data_source"] = "google_ads"

        with self._lock:
            if self.persist:
                with open(self._path(EXPERIMENT_MEASUREMENTS, "jsonl"), "a") as f:
                    f.write(json.dumps(record, default=str) + "\n")
            self._add_measurement(record)

        return dict(record)

    def _add_measurement(self, record: Dict[str, Any]):
        """Append in place and drop leading rows that fell out of the window. Caller holds the lock."""
        self._measurements.append(record)

        created = pd.Timestamp(record["created_at"])
        if self._newest_measurement is None or created > self._newest_measurement:
            self._newest_measurement = created

        cutoff = self._newest_measurement - self.measurement_window
        expired = 0
        for row in self._measurements:
            if pd.Timestamp(row["created_at"]) >= cutoff:
                break
            expired += 1
        if expired:
            del self._measurements[:expired]

    def measurement_count(self) -> int:
        return len(self._measurements)

    def query_measurements(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> pd.DataFrame:
        """
        Measurements created in [since, until) as a DataFrame.

        Args:
            since: Inclusive lower bound on created_at
            until: Exclusive upper bound on created_at

        Returns:
            DataFrame with the measurement columns and a parsed created_at
        """
        rows = list(self._measurements)
        df = pd.DataFrame(rows, columns=MEASUREMENT_COLUMNS)
        if df.empty:
            return df

        df["created_at"] = pd.to_datetime(df["created_at"])
        for column in ["successes", "trials", "revenue_total"]:
            df[column] = pd.to_numeric(df[column], errors="coerce").fillna(0.0)

        if since is not None:
            df = df[df["created_at"] >= pd.Timestamp(since)]
        if until is not None:
            df = df[df["created_at"] < pd.Timestamp(until)]

        return df.reset_index(drop=True)
