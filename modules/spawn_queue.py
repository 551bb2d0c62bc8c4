import itertools
import logging
from collections import deque
from dataclasses import dataclass

from modules.engine import SimulationEngine
from modules.errors import EngineUnavailableError
from modules.route_catalog import RouteCatalog


logger = logging.getLogger(__name__)

DEFAULT_VEHICLE_TYPE = "veh_passenger"
DEFAULT_MAX_PER_TICK = 50

# Process-wide: injected ids never repeat across queues
_VEHICLE_SEQUENCE = itertools.count(1)


def next_vehicle_id() -> str:
    return f"inj_{next(_VEHICLE_SEQUENCE)}"


@dataclass
class SpawnRequest:
    """
    A pending request to inject vehicles on one route.

    Attributes:
        route_id (str): Route to inject on.
        type_id (str): Vehicle type to inject.
        remaining_count (int): Vehicles still to inject; the request leaves the queue at 0.
    """

    route_id: str
    type_id: str
    remaining_count: int


class SpawnQueue:
    """
    FIFO of spawn requests drained a bounded number of vehicles per tick.

    Callers only enqueue; the add-vehicle calls happen in `drain`, once per tick,
    so a large backlog is spread over as many ticks as it needs.
    """

    def __init__(self, engine: SimulationEngine, route_catalog: RouteCatalog):
        self.engine = engine
        self.route_catalog = route_catalog
        self._queue: deque[SpawnRequest] = deque()
        self._routes_registered: bool = False

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(self, route_id: str, type_id: str, count: int) -> bool:
        """Append a request. Empty ids or a non-positive count are ignored (returns False)."""
        if not route_id or not route_id.strip():
            return False
        if not type_id or not type_id.strip():
            return False
        if count <= 0:
            return False

        self._queue.append(SpawnRequest(route_id, type_id, int(count)))
        return True

    def pending_requests(self) -> list[SpawnRequest]:
        """Copies of the queued requests, head first."""
        return [SpawnRequest(r.route_id, r.type_id, r.remaining_count) for r in self._queue]

    def pending_vehicles(self) -> int:
        return sum(r.remaining_count for r in self._queue)

    def clear(self) -> None:
        self._queue.clear()

    @property
    def routes_registered(self) -> bool:
        return self._routes_registered

    def reset_route_registration(self) -> None:
        """Forget the registration, e.g. after the engine was replaced by a fresh one."""
        self._routes_registered = False

    def register_routes_once(self) -> None:
        if self._routes_registered:
            return

        for route in self.route_catalog:
            try:
                self.engine.add_route(route.route_id, list(route.edges))
            except EngineUnavailableError:
                raise
            except Exception as e:
                logger.warning("could not register route %s: %s", route.route_id, e)

        self._routes_registered = True
        logger.info("registered %d routes", len(self.route_catalog))

    def drain(self, max_per_tick: int = DEFAULT_MAX_PER_TICK) -> int:
        """Inject up to `max_per_tick` vehicles from the head of the queue. Returns the number drained."""
        if not self._queue:
            return 0

        self.register_routes_once()

        depart = f"{self.engine.get_time():.2f}"
        drained = 0
        while drained < max_per_tick and self._queue:
            request = self._queue[0]
            self._spawn_one(request, depart)

            request.remaining_count -= 1
            drained += 1

            if request.remaining_count <= 0:
                self._queue.popleft()

        return drained

    def _spawn_one(self, request: SpawnRequest, depart: str) -> None:
        vehicle_id = next_vehicle_id()
        try:
            self.engine.add_vehicle(
                vehicle_id,
                request.route_id,
                request.type_id,
                depart,
                depart_lane="best",
                depart_pos="random",
                depart_speed="max",
                arrival_lane="current",
            )
        except EngineUnavailableError:
            raise
        except Exception as e:
            # Unit is consumed either way
            logger.warning(
                "add vehicle %s on route %s failed: %s", vehicle_id, request.route_id, e
            )
