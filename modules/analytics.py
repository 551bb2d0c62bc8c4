import threading
from collections import deque
from dataclasses import dataclass, field

import numpy as np


# A vehicle at or below this speed (m/s) counts as stopped
STOPPED_SPEED_MPS = 0.1

# Trip length buckets (seconds): short < 60 <= medium <= 300 < long
SHORT_TRIP_MAX_S = 60.0
MEDIUM_TRIP_MAX_S = 300.0

# Congestion: enough vehicles on the edge and a high share of them stopped
MIN_VEHICLES_FOR_CONGESTION = 10
CONGESTION_STOPPED_SHARE = 0.6

DEFAULT_MAX_FINISHED_TRIPS = 10_000


@dataclass(frozen=True)
class VehicleTracking:
    """One vehicle in a tracking sample."""

    id: str
    edge_id: str | None
    speed_mps: float


@dataclass(frozen=True)
class TrafficTracking:
    """
    Input of one analytics call.

    Attributes:
        sim_time_s (float): Simulation time of the sample in seconds.
        vehicles (list[VehicleTracking]): Vehicles present at that time.
        edge_lengths_m (dict[str, float]): Edge id -> length in metres, for densities.
    """

    sim_time_s: float
    vehicles: list[VehicleTracking] = field(default_factory=list)
    edge_lengths_m: dict[str, float] = field(default_factory=dict)


@dataclass
class Metrics:
    """
    Aggregate traffic metrics for one analytics call.

    Attributes:
        average_speed_mps (float): Mean speed over all vehicles in m/s.
        vehicle_count (int): Vehicles in the sample.
        stopped_vehicle_count (int): Vehicles at or below the stopped speed.
        vehicles_per_edge (dict[str, int]): Vehicle count per edge.
        stopped_per_edge (dict[str, int]): Stopped vehicle count per edge.
        density_per_edge (dict[str, float]): Vehicles per km, only for edges with a known length.
        finished_trip_count (int): Trips in the finished-trip history.
        average_travel_time_s (float): Mean finished travel time.
        min_travel_time_s (float): Shortest finished travel time.
        max_travel_time_s (float): Longest finished travel time.
        short_trips (int): Trips under 60 s.
        medium_trips (int): Trips from 60 s to 300 s inclusive.
        long_trips (int): Trips over 300 s.
    """

    average_speed_mps: float = 0.0
    vehicle_count: int = 0
    stopped_vehicle_count: int = 0
    vehicles_per_edge: dict[str, int] = field(default_factory=dict)
    stopped_per_edge: dict[str, int] = field(default_factory=dict)
    density_per_edge: dict[str, float] = field(default_factory=dict)

    finished_trip_count: int = 0
    average_travel_time_s: float = 0.0
    min_travel_time_s: float = 0.0
    max_travel_time_s: float = 0.0
    short_trips: int = 0
    medium_trips: int = 0
    long_trips: int = 0

    @property
    def average_speed_kmh(self) -> float:
        return self.average_speed_mps * 3.6

    @property
    def stopped_ratio(self) -> float:
        if self.vehicle_count == 0:
            return 0.0
        return self.stopped_vehicle_count / self.vehicle_count

    def stopped_ratio_for_edge(self, edge_id: str) -> float:
        total = self.vehicles_per_edge.get(edge_id, 0)
        if total == 0:
            return 0.0
        return self.stopped_per_edge.get(edge_id, 0) / total

    def density_for_edge(self, edge_id: str) -> float:
        return self.density_per_edge.get(edge_id, 0.0)

    def is_edge_congested(self, edge_id: str) -> bool:
        total = self.vehicles_per_edge.get(edge_id, 0)
        if total < MIN_VEHICLES_FOR_CONGESTION:
            return False
        stopped = self.stopped_per_edge.get(edge_id, 0)
        return stopped / total >= CONGESTION_STOPPED_SHARE

    def congested_edges(self) -> list[str]:
        return sorted(e for e in self.vehicles_per_edge if self.is_edge_congested(e))


def classify_trip(travel_time_s: float) -> str:
    """Bucket a travel time into "short", "medium" or "long"."""
    if travel_time_s < SHORT_TRIP_MAX_S:
        return "short"
    if travel_time_s <= MEDIUM_TRIP_MAX_S:
        return "medium"
    return "long"


class TripAnalyticsEngine:
    """
    Turns tracking samples into Metrics and keeps trip state between calls.

    A vehicle's trip starts the first time it appears in a sample and finishes
    the first time it is missing from a sample after having been seen in the
    previous one. Calls may come from several reader threads; they are serialized.
    A sample older than the last one processed still gets its counts, but leaves
    the trip state untouched.
    """

    def __init__(self, max_finished_trips: int | None = DEFAULT_MAX_FINISHED_TRIPS):
        self._lock = threading.Lock()
        self._start_times: dict[str, float] = {}
        self._last_seen: set[str] = set()
        self._last_time_s: float | None = None
        self._finished: deque[float] = deque(maxlen=max_finished_trips)

    def finished_travel_times(self) -> list[float]:
        with self._lock:
            return list(self._finished)

    def open_trips(self) -> int:
        with self._lock:
            return len(self._start_times)

    def reset(self) -> None:
        with self._lock:
            self._start_times.clear()
            self._last_seen.clear()
            self._last_time_s = None
            self._finished.clear()

    def compute(self, sample: TrafficTracking) -> Metrics:
        """Compute the metrics for one sample and advance the trip state."""
        with self._lock:
            metrics = self._count_vehicles(sample)
            if self._last_time_s is None or sample.sim_time_s >= self._last_time_s:
                self._update_trips(sample)
            self._fill_trip_statistics(metrics)
            return metrics

    # ---- Helpers ---- #

    def _count_vehicles(self, sample: TrafficTracking) -> Metrics:
        metrics = Metrics()
        speeds = [v.speed_mps for v in sample.vehicles]

        for v in sample.vehicles:
            stopped = v.speed_mps <= STOPPED_SPEED_MPS
            if stopped:
                metrics.stopped_vehicle_count += 1

            if v.edge_id is None:
                continue
            metrics.vehicles_per_edge[v.edge_id] = (
                metrics.vehicles_per_edge.get(v.edge_id, 0) + 1
            )
            if stopped:
                metrics.stopped_per_edge[v.edge_id] = (
                    metrics.stopped_per_edge.get(v.edge_id, 0) + 1
                )

        metrics.vehicle_count = len(speeds)
        metrics.average_speed_mps = float(np.mean(speeds)) if speeds else 0.0

        for edge_id, n_vehicles in metrics.vehicles_per_edge.items():
            length_m = sample.edge_lengths_m.get(edge_id)
            if length_m is None or length_m <= 0.0:
                continue
            metrics.density_per_edge[edge_id] = n_vehicles / (length_m / 1000.0)

        return metrics

    def _update_trips(self, sample: TrafficTracking) -> None:
        now = sample.sim_time_s
        current_ids = {v.id for v in sample.vehicles if v.id is not None}

        for vehicle_id in current_ids:
            self._start_times.setdefault(vehicle_id, now)

        for vehicle_id in self._last_seen - current_ids:
            start = self._start_times.pop(vehicle_id, None)
            if start is not None:
                self._finished.append(max(0.0, now - start))

        self._last_seen = current_ids
        self._last_time_s = now

    def _fill_trip_statistics(self, metrics: Metrics) -> None:
        if not self._finished:
            return

        times = np.fromiter(self._finished, dtype=float)
        metrics.finished_trip_count = int(times.size)
        metrics.average_travel_time_s = float(times.mean())
        metrics.min_travel_time_s = float(times.min())
        metrics.max_travel_time_s = float(times.max())
        metrics.short_trips = int(np.count_nonzero(times < SHORT_TRIP_MAX_S))
        metrics.long_trips = int(np.count_nonzero(times > MEDIUM_TRIP_MAX_S))
        metrics.medium_trips = (
            metrics.finished_trip_count - metrics.short_trips - metrics.long_trips
        )


def tracking_from_snapshot(snapshot) -> TrafficTracking:
    """Build a tracking sample from a published VehicleSnapshot, without touching the engine."""
    return TrafficTracking(
        sim_time_s=snapshot.sim_time_s,
        vehicles=[
            VehicleTracking(id=v.id, edge_id=v.edge_id, speed_mps=v.speed)
            for v in snapshot.vehicles
        ],
        edge_lengths_m=dict(snapshot.edge_lengths_m),
    )
