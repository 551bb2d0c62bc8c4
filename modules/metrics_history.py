import bisect
import threading
from collections import deque
from dataclasses import dataclass

import pandas as pd

from modules.analytics import Metrics


DEFAULT_MAX_RECORDS = 600


@dataclass(frozen=True)
class MetricsEntry:
    """
    Time-stamped metrics sample.

    Attributes:
        t (float): Simulation time the metrics were computed at.
        metrics (Metrics): The metrics.
    """

    t: float
    metrics: Metrics


class MetricsHistory:
    """
    Rolling, time-indexed history of metrics (O(1) append, O(log N) lookup).
    - Bounded by `max_records`; the oldest entries fall off.
    - Series accessors for live charts, DataFrame view for exports.
    """

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS):
        self.max_records = max(1, int(max_records))
        self._entries: deque[MetricsEntry] = deque()
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def log(self, t: float, metrics: Metrics) -> MetricsEntry:
        """Append a new entry."""
        entry = MetricsEntry(t=float(t), metrics=metrics)
        with self._lock:
            if self._timestamps and entry.t <= self._timestamps[-1]:
                raise ValueError("History entries must have strictly increasing timestamps.")

            self._entries.append(entry)
            self._timestamps.append(entry.t)

            while len(self._entries) > self.max_records:
                self._entries.popleft()
                self._timestamps.popleft()

        return entry

    def get_latest(self) -> MetricsEntry | None:
        return self._entries[-1] if self._entries else None

    def get_at(self, t: float) -> MetricsEntry | None:
        """Get the entry at or before time t, or None if no such entry exists."""
        with self._lock:
            idx = bisect.bisect_right(self._timestamps, t) - 1
            return self._entries[idx] if idx >= 0 else None

    def get_between(self, t_start: float, t_end: float) -> list[MetricsEntry]:
        """Get all entries between and including t_start and t_end."""
        with self._lock:
            idx_start = bisect.bisect_left(self._timestamps, t_start)
            idx_end = bisect.bisect_right(self._timestamps, t_end)
            return [self._entries[i] for i in range(idx_start, idx_end)]

    # ---- Series ---- #

    def entries(self) -> list[MetricsEntry]:
        with self._lock:
            return list(self._entries)

    def times(self) -> list[float]:
        with self._lock:
            return list(self._timestamps)

    def average_speeds(self) -> list[float]:
        return [e.metrics.average_speed_mps for e in self.entries()]

    def vehicle_counts(self) -> list[int]:
        return [e.metrics.vehicle_count for e in self.entries()]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per entry with the scalar metrics, indexed by simulation time."""
        rows = [
            {
                "t": e.t,
                "average_speed_mps": e.metrics.average_speed_mps,
                "vehicle_count": e.metrics.vehicle_count,
                "stopped_vehicle_count": e.metrics.stopped_vehicle_count,
                "stopped_ratio": e.metrics.stopped_ratio,
                "congested_edges": len(e.metrics.congested_edges()),
                "finished_trip_count": e.metrics.finished_trip_count,
                "average_travel_time_s": e.metrics.average_travel_time_s,
                "short_trips": e.metrics.short_trips,
                "medium_trips": e.metrics.medium_trips,
                "long_trips": e.metrics.long_trips,
            }
            for e in self.entries()
        ]
        columns = [
            "t",
            "average_speed_mps",
            "vehicle_count",
            "stopped_vehicle_count",
            "stopped_ratio",
            "congested_edges",
            "finished_trip_count",
            "average_travel_time_s",
            "short_trips",
            "medium_trips",
            "long_trips",
        ]
        return pd.DataFrame(rows, columns=columns).set_index("t")

    def reset(self) -> None:
        """Clear all recorded entries."""
        with self._lock:
            self._entries.clear()
            self._timestamps.clear()
