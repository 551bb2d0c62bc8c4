"""
Engine contract used by the orchestration core, and its TraCI implementation.

The core never touches `traci` directly: everything goes through an object
that satisfies `SimulationEngine`. Tests drive the core with an in-memory fake.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Protocol

from traci.exceptions import FatalTraCIError, TraCIException

from modules.errors import EngineFatalError, EngineUnavailableError
from utils.sumo_helpers import SUMOConfig, start_sumo, close_sumo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VehicleState:
    """
    Raw per-vehicle readings for one tick.

    Attributes:
        edge_id (str): Edge (road) the vehicle is on. Empty while not yet inserted.
        route_id (str): Route id, empty if the engine could not report it.
        type_id (str): Vehicle type id, empty if the engine could not report it.
        speed (float): Speed in m/s.
        x (float): Network x coordinate.
        y (float): Network y coordinate.
    """

    edge_id: str
    route_id: str
    type_id: str
    speed: float
    x: float
    y: float


@dataclass(frozen=True)
class Found:
    state: VehicleState


class NotFound:
    """The engine no longer knows the requested vehicle id."""

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = NotFound()

VehicleLookup = Found | NotFound


class SimulationEngine(Protocol):
    def start(self) -> None: ...

    def close(self) -> None: ...

    def step(self) -> None: ...

    def get_time(self) -> float: ...

    def add_vehicle(
        self,
        vehicle_id: str,
        route_id: str,
        type_id: str,
        depart: str,
        depart_lane: str = "best",
        depart_pos: str = "random",
        depart_speed: str = "max",
        arrival_lane: str = "current",
    ) -> None: ...

    def add_route(self, route_id: str, edges: list[str]) -> None: ...

    def get_departed_ids(self) -> list[str]: ...

    def get_arrived_ids(self) -> list[str]: ...

    def get_teleport_start_ids(self) -> list[str]: ...

    def get_teleport_end_ids(self) -> list[str]: ...

    def query_vehicle(self, vehicle_id: str) -> VehicleLookup: ...

    def get_edge_length(self, edge_id: str) -> float: ...

    def get_traffic_light_ids(self) -> list[str]: ...

    def get_phase(self, tl_id: str) -> int: ...

    def set_phase(self, tl_id: str, phase_index: int) -> None: ...

    def get_state(self, tl_id: str) -> str: ...

    def set_state(self, tl_id: str, state: str) -> None: ...

    def get_program(self, tl_id: str) -> str: ...

    def set_program(self, tl_id: str, program_id: str) -> None: ...


@contextmanager
def _connection_errors():
    """Translate a lost or missing TraCI connection into EngineUnavailableError."""
    try:
        yield
    except FatalTraCIError as e:
        raise EngineUnavailableError(str(e)) from e


class TraciEngine:
    """SimulationEngine backed by a labelled TraCI connection to SUMO."""

    def __init__(
        self,
        config: SUMOConfig,
        connect: Callable[[SUMOConfig], object] = start_sumo,
        disconnect: Callable[[object], None] = close_sumo,
    ):
        self.config = config
        self._connect = connect
        self._disconnect = disconnect
        self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _c(self):
        if self._conn is None:
            raise EngineUnavailableError("Not connected to SUMO.")
        return self._conn

    # ---- Lifecycle ---- #

    def start(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = self._connect(self.config)
        except Exception as e:
            raise EngineFatalError(f"Could not start SUMO: {e}") from e

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            self._disconnect(conn)

    # ---- Simulation ---- #

    def step(self) -> None:
        with _connection_errors():
            self._c().simulationStep()

    def get_time(self) -> float:
        with _connection_errors():
            return float(self._c().simulation.getTime())

    def add_vehicle(
        self,
        vehicle_id: str,
        route_id: str,
        type_id: str,
        depart: str,
        depart_lane: str = "best",
        depart_pos: str = "random",
        depart_speed: str = "max",
        arrival_lane: str = "current",
    ) -> None:
        with _connection_errors():
            self._c().vehicle.add(
                vehicle_id,
                route_id,
                typeID=type_id,
                depart=depart,
                departLane=depart_lane,
                departPos=depart_pos,
                departSpeed=depart_speed,
                arrivalLane=arrival_lane,
            )

    def add_route(self, route_id: str, edges: list[str]) -> None:
        with _connection_errors():
            self._c().route.add(route_id, list(edges))

    def get_departed_ids(self) -> list[str]:
        with _connection_errors():
            return list(self._c().simulation.getDepartedIDList())

    def get_arrived_ids(self) -> list[str]:
        with _connection_errors():
            return list(self._c().simulation.getArrivedIDList())

    def get_teleport_start_ids(self) -> list[str]:
        # Not every SUMO release exposes the teleport lists
        with _connection_errors():
            return list(self._c().simulation.getStartingTeleportIDList())

    def get_teleport_end_ids(self) -> list[str]:
        with _connection_errors():
            return list(self._c().simulation.getEndingTeleportIDList())

    # ---- Vehicles ---- #

    def query_vehicle(self, vehicle_id: str) -> VehicleLookup:
        conn = self._c()
        with _connection_errors():
            try:
                edge_id = conn.vehicle.getRoadID(vehicle_id)
                x, y = conn.vehicle.getPosition(vehicle_id)
                speed = conn.vehicle.getSpeed(vehicle_id)
            except TraCIException:
                return NOT_FOUND

            route_id = self._optional(conn.vehicle.getRouteID, vehicle_id)
            type_id = self._optional(conn.vehicle.getTypeID, vehicle_id)

        return Found(
            VehicleState(
                edge_id=edge_id or "",
                route_id=route_id,
                type_id=type_id,
                speed=float(speed),
                x=float(x),
                y=float(y),
            )
        )

    @staticmethod
    def _optional(getter, vehicle_id: str) -> str:
        try:
            return getter(vehicle_id) or ""
        except TraCIException:
            return ""

    def get_edge_length(self, edge_id: str) -> float:
        # SUMO names lanes <edge>_<index>; lane 0 stands in for the edge
        with _connection_errors():
            return float(self._c().lane.getLength(f"{edge_id}_0"))

    # ---- Traffic lights ---- #

    def get_traffic_light_ids(self) -> list[str]:
        with _connection_errors():
            return list(self._c().trafficlight.getIDList())

    def get_phase(self, tl_id: str) -> int:
        with _connection_errors():
            return int(self._c().trafficlight.getPhase(tl_id))

    def set_phase(self, tl_id: str, phase_index: int) -> None:
        with _connection_errors():
            self._c().trafficlight.setPhase(tl_id, int(phase_index))

    def get_state(self, tl_id: str) -> str:
        with _connection_errors():
            return self._c().trafficlight.getRedYellowGreenState(tl_id)

    def set_state(self, tl_id: str, state: str) -> None:
        with _connection_errors():
            self._c().trafficlight.setRedYellowGreenState(tl_id, state)

    def get_program(self, tl_id: str) -> str:
        with _connection_errors():
            return self._c().trafficlight.getProgram(tl_id)

    def set_program(self, tl_id: str, program_id: str) -> None:
        with _connection_errors():
            self._c().trafficlight.setProgram(tl_id, program_id)
