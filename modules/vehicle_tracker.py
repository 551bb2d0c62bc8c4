import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from modules.engine import Found, SimulationEngine
from modules.errors import EngineUnavailableError


logger = logging.getLogger(__name__)

DEFAULT_EDGE_LENGTH_M = 100.0


@dataclass(frozen=True)
class VehicleSnapshotEntry:
    """
    One vehicle as seen at the end of a tick.

    Attributes:
        id (str): Vehicle id.
        edge_id (str): Edge the vehicle is on.
        route_id (str): Route id, may be empty.
        type_id (str): Vehicle type id, may be empty.
        speed (float): Speed in m/s.
        x (float): Network x coordinate.
        y (float): Network y coordinate.
    """

    id: str
    edge_id: str
    route_id: str
    type_id: str
    speed: float
    x: float
    y: float


@dataclass(frozen=True)
class VehicleSnapshot:
    """
    Immutable view of all live vehicles, published once per tick.

    Attributes:
        sim_time_s (float): Engine time the snapshot was taken at.
        vehicles (tuple[VehicleSnapshotEntry, ...]): Vehicles in the snapshot.
        edge_lengths_m (Mapping[str, float]): Lengths of the edges the vehicles occupy.
    """

    sim_time_s: float = 0.0
    vehicles: tuple[VehicleSnapshotEntry, ...] = ()
    edge_lengths_m: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __len__(self) -> int:
        return len(self.vehicles)

    def __iter__(self):
        return iter(self.vehicles)

    def ids(self) -> list[str]:
        return [v.id for v in self.vehicles]

    def get(self, vehicle_id: str) -> VehicleSnapshotEntry | None:
        for v in self.vehicles:
            if v.id == vehicle_id:
                return v
        return None

    def on_edge(self, edge_id: str) -> list[VehicleSnapshotEntry]:
        return [v for v in self.vehicles if v.edge_id == edge_id]

    def average_speed(self) -> float:
        if not self.vehicles:
            return 0.0
        return sum(v.speed for v in self.vehicles) / len(self.vehicles)


EMPTY_SNAPSHOT = VehicleSnapshot()


class VehicleSnapshotTracker:
    """
    Keeps the set of live vehicle ids in step with the engine and publishes snapshots.

    Each refresh applies the departed/arrived (and teleport) lists, queries every
    active id, drops the ids the engine no longer knows, and then swaps in a new
    fully built snapshot. Readers only ever see a complete snapshot.
    """

    def __init__(
        self,
        engine: SimulationEngine,
        fallback_edge_length_m: float = DEFAULT_EDGE_LENGTH_M,
    ):
        self.engine = engine
        self.fallback_edge_length_m = fallback_edge_length_m
        self._active_ids: set[str] = set()
        self._edge_lengths: dict[str, float] = {}
        self._snapshot: VehicleSnapshot = EMPTY_SNAPSHOT

    # ---- Reads (any thread) ---- #

    @property
    def snapshot(self) -> VehicleSnapshot:
        return self._snapshot

    def is_active(self, vehicle_id: str) -> bool:
        return vehicle_id in self._active_ids

    def active_count(self) -> int:
        return len(self._active_ids)

    # ---- Tick-time methods ---- #

    def refresh(self) -> VehicleSnapshot:
        """Reconcile the active ids with the engine and publish a new snapshot."""
        self._apply_population_changes()

        vehicles: list[VehicleSnapshotEntry] = []
        gone: list[str] = []
        for vehicle_id in list(self._active_ids):
            lookup = self.engine.query_vehicle(vehicle_id)
            if not isinstance(lookup, Found):
                gone.append(vehicle_id)
                continue

            state = lookup.state
            if not state.edge_id:
                # Known to the engine but not placed on the network yet
                continue

            vehicles.append(
                VehicleSnapshotEntry(
                    id=vehicle_id,
                    edge_id=state.edge_id,
                    route_id=state.route_id,
                    type_id=state.type_id,
                    speed=state.speed,
                    x=state.x,
                    y=state.y,
                )
            )

        for vehicle_id in gone:
            self._active_ids.discard(vehicle_id)

        vehicles.sort(key=lambda v: v.id)
        edge_lengths = {
            edge_id: self._edge_length(edge_id)
            for edge_id in {v.edge_id for v in vehicles}
        }

        snapshot = VehicleSnapshot(
            sim_time_s=self.engine.get_time(),
            vehicles=tuple(vehicles),
            edge_lengths_m=MappingProxyType(edge_lengths),
        )
        self._snapshot = snapshot
        return snapshot

    def reset(self) -> None:
        """Forget all vehicles, e.g. when the engine is shut down."""
        self._active_ids.clear()
        self._edge_lengths.clear()
        self._snapshot = EMPTY_SNAPSHOT

    # ---- Helpers ---- #

    def _apply_population_changes(self) -> None:
        self._active_ids.update(self.engine.get_departed_ids())
        self._active_ids.difference_update(self.engine.get_arrived_ids())

        # Teleporting vehicles leave the network for a while; the lists are
        # missing on some SUMO releases
        for getter in (
            self.engine.get_teleport_start_ids,
            self.engine.get_teleport_end_ids,
        ):
            try:
                self._active_ids.difference_update(getter())
            except EngineUnavailableError:
                raise
            except Exception as e:
                logger.debug("teleport list unavailable: %s", e)

    def _edge_length(self, edge_id: str) -> float:
        length = self._edge_lengths.get(edge_id)
        if length is not None:
            return length

        try:
            length = float(self.engine.get_edge_length(edge_id))
        except EngineUnavailableError:
            raise
        except Exception as e:
            logger.debug("no length for edge %s, using fallback: %s", edge_id, e)
            length = self.fallback_edge_length_m

        self._edge_lengths[edge_id] = length
        return length
