import pytest

from modules.engine import NOT_FOUND, Found, VehicleState
from modules.errors import EngineFatalError, EngineUnavailableError
from modules.route_catalog import RouteCatalog, RouteInfo


class FakeEngine:
    """
    In-memory stand-in for SUMO behind the SimulationEngine contract.

    Vehicles added via `add_vehicle` depart on the next `step()` and sit on the
    first edge of their route. Tests move, remove or fail things directly.
    """

    def __init__(self, step_length_s: float = 1.0):
        self.step_length_s = step_length_s
        self.started = False
        self.start_calls = 0
        self.close_calls = 0
        self.fail_start = False
        self.unavailable = False

        self.time = 0.0
        self.routes: dict[str, list[str]] = {}
        self.add_route_calls: list[str] = []
        self.add_vehicle_calls: list[dict] = []
        self.fail_add_for_routes: set[str] = set()

        self.vehicles: dict[str, VehicleState] = {}
        self._pending: list[str] = []
        self.departed: list[str] = []
        self.arrived: list[str] = []
        self.teleport_start: list[str] = []
        self.teleport_end: list[str] = []
        self.teleport_lists_available = True

        self.edge_lengths: dict[str, float] = {}
        self.edge_length_calls: list[str] = []

        self.phases: dict[str, int] = {}
        self.states: dict[str, str] = {}
        self.programs: dict[str, str] = {}
        self.set_phase_calls: list[tuple[str, int]] = []
        self.fail_phase_calls = False

    # ---- helpers for tests ---- #

    def _check(self):
        if self.unavailable or not self.started:
            raise EngineUnavailableError("not connected")

    def place(self, vehicle_id: str, edge_id: str, speed: float = 10.0, route_id: str = ""):
        """Put a vehicle on the network and report it as departed on the next step."""
        self.vehicles[vehicle_id] = VehicleState(
            edge_id=edge_id, route_id=route_id, type_id="car", speed=speed, x=0.0, y=0.0
        )
        self.departed.append(vehicle_id)

    def remove(self, vehicle_id: str, arrived: bool = True):
        self.vehicles.pop(vehicle_id, None)
        if arrived:
            self.arrived.append(vehicle_id)

    def add_light(self, tl_id: str, phase: int = 0, state: str = "rrGG", program: str = "0"):
        self.phases[tl_id] = phase
        self.states[tl_id] = state
        self.programs[tl_id] = program

    # ---- SimulationEngine ---- #

    def start(self):
        self.start_calls += 1
        if self.fail_start:
            raise EngineFatalError("sumo binary not found")
        self.started = True

    def close(self):
        self.close_calls += 1
        self.started = False

    def step(self):
        self._check()
        self.time += self.step_length_s
        for vehicle_id in self._pending:
            route = self.add_vehicle_calls_by_id[vehicle_id]["route_id"]
            edges = self.routes.get(route, ["e0"])
            self.vehicles[vehicle_id] = VehicleState(
                edge_id=edges[0], route_id=route, type_id="car", speed=5.0, x=0.0, y=0.0
            )
            self.departed.append(vehicle_id)
        self._pending = []

    @property
    def add_vehicle_calls_by_id(self) -> dict[str, dict]:
        return {c["vehicle_id"]: c for c in self.add_vehicle_calls}

    def get_time(self) -> float:
        self._check()
        return self.time

    def add_vehicle(
        self,
        vehicle_id,
        route_id,
        type_id,
        depart,
        depart_lane="best",
        depart_pos="random",
        depart_speed="max",
        arrival_lane="current",
    ):
        self._check()
        self.add_vehicle_calls.append(
            dict(
                vehicle_id=vehicle_id,
                route_id=route_id,
                type_id=type_id,
                depart=depart,
                depart_lane=depart_lane,
                depart_pos=depart_pos,
                depart_speed=depart_speed,
                arrival_lane=arrival_lane,
            )
        )
        if route_id in self.fail_add_for_routes:
            raise RuntimeError(f"Invalid route '{route_id}'")
        self._pending.append(vehicle_id)

    def add_route(self, route_id, edges):
        self._check()
        self.add_route_calls.append(route_id)
        self.routes[route_id] = list(edges)

    def get_departed_ids(self):
        self._check()
        ids, self.departed = self.departed, []
        return ids

    def get_arrived_ids(self):
        self._check()
        ids, self.arrived = self.arrived, []
        return ids

    def get_teleport_start_ids(self):
        self._check()
        if not self.teleport_lists_available:
            raise RuntimeError("getStartingTeleportIDList not supported")
        ids, self.teleport_start = self.teleport_start, []
        return ids

    def get_teleport_end_ids(self):
        self._check()
        if not self.teleport_lists_available:
            raise RuntimeError("getEndingTeleportIDList not supported")
        ids, self.teleport_end = self.teleport_end, []
        return ids

    def query_vehicle(self, vehicle_id):
        self._check()
        state = self.vehicles.get(vehicle_id)
        return Found(state) if state is not None else NOT_FOUND

    def get_edge_length(self, edge_id):
        self._check()
        self.edge_length_calls.append(edge_id)
        if edge_id not in self.edge_lengths:
            raise RuntimeError(f"Lane '{edge_id}_0' is not known")
        return self.edge_lengths[edge_id]

    def get_traffic_light_ids(self):
        self._check()
        return sorted(self.phases)

    def get_phase(self, tl_id):
        self._check()
        if self.fail_phase_calls:
            raise RuntimeError("phase query failed")
        return self.phases[tl_id]

    def set_phase(self, tl_id, phase_index):
        self._check()
        if self.fail_phase_calls:
            raise RuntimeError("phase change failed")
        self.set_phase_calls.append((tl_id, phase_index))
        self.phases[tl_id] = phase_index

    def get_state(self, tl_id):
        self._check()
        return self.states[tl_id]

    def set_state(self, tl_id, state):
        self._check()
        self.states[tl_id] = state

    def get_program(self, tl_id):
        self._check()
        return self.programs[tl_id]

    def set_program(self, tl_id, program_id):
        self._check()
        self.programs[tl_id] = program_id


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ------------------------- Fixtures -------------------------

@pytest.fixture
def engine():
    e = FakeEngine()
    e.start()
    return e


@pytest.fixture
def stopped_engine():
    return FakeEngine()


@pytest.fixture
def catalog():
    return RouteCatalog(
        [
            RouteInfo("r1", ("e1", "e2"), "Route 1"),
            RouteInfo("r2", ("e3", "e4"), "Route 2"),
            RouteInfo("r3", ("e5",), "Route 3"),
        ]
    )


@pytest.fixture
def empty_catalog():
    return RouteCatalog([])


@pytest.fixture
def clock():
    return FakeClock()
