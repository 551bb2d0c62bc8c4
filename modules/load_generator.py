import logging
import random
from dataclasses import dataclass
from enum import Enum

from modules.route_catalog import RouteCatalog
from modules.spawn_queue import DEFAULT_VEHICLE_TYPE, SpawnQueue
from utils.log_throttle import ThrottledLogger


logger = logging.getLogger(__name__)


class LoadGeneratorPolicy(Enum):
    PERIODIC_BURST = "periodic_burst"
    ONE_SHOT_BURST = "one_shot_burst"


@dataclass
class LoadGeneratorConfig:
    """
    Settings for bulk vehicle generation.

    Attributes:
        policy (LoadGeneratorPolicy): Which burst policy to run.
        interval_ticks (int): Periodic burst: ticks between two bursts.
        vehicles_per_interval (int): Periodic burst: vehicles queued per burst.
        total_vehicles (int): One-shot burst: vehicles queued once after enabling.
        vehicle_type (str): Vehicle type used for every generated request.
        enabled (bool): Whether the generator starts enabled.
    """

    policy: LoadGeneratorPolicy = LoadGeneratorPolicy.PERIODIC_BURST
    interval_ticks: int = 30
    vehicles_per_interval: int = 10
    total_vehicles: int = 100
    vehicle_type: str = DEFAULT_VEHICLE_TYPE
    enabled: bool = False


class LoadGenerator:
    """
    Stress load: queues single-vehicle spawn requests on random routes.

    Only ever enqueues; the vehicles are injected by the SpawnQueue drain of the
    same or later ticks.
    """

    def __init__(
        self,
        spawn_queue: SpawnQueue,
        route_catalog: RouteCatalog,
        config: LoadGeneratorConfig | None = None,
        rng: random.Random | None = None,
    ):
        self.spawn_queue = spawn_queue
        self.route_catalog = route_catalog
        self.config: LoadGeneratorConfig = (
            config if config is not None else LoadGeneratorConfig()
        )
        if self.config.interval_ticks <= 0:
            raise ValueError("interval_ticks must be a positive integer.")
        self.rng = rng if rng is not None else random.Random()

        self._tick_counter: int = 0
        self._burst_executed: bool = False
        self._empty_catalog_log = ThrottledLogger(logger)

    # ---- Configuration ---- #

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def burst_executed(self) -> bool:
        return self._burst_executed

    def configure(self, count: int) -> None:
        """Set the vehicle count of the active policy (at least 1)."""
        count = max(1, int(count))
        if self.config.policy is LoadGeneratorPolicy.PERIODIC_BURST:
            self.config.vehicles_per_interval = count
        else:
            self.config.total_vehicles = count
        logger.info("load generator (%s) count=%d", self.config.policy.value, count)

    def set_policy(self, policy: LoadGeneratorPolicy) -> None:
        self.config.policy = policy
        self._tick_counter = 0
        self._burst_executed = False

    def toggle(self) -> bool:
        """Flip the generator on or off. Resets the interval counter and the one-shot latch."""
        self.config.enabled = not self.config.enabled
        self._tick_counter = 0
        self._burst_executed = False
        logger.info("load generator enabled=%s", self.config.enabled)
        return self.config.enabled

    # ---- Step-time methods ---- #

    def tick(self) -> int:
        """Run one tick of the active policy. Returns the number of vehicles queued."""
        if not self.config.enabled:
            return 0

        if self.config.policy is LoadGeneratorPolicy.PERIODIC_BURST:
            return self._tick_periodic()
        return self._tick_one_shot()

    def _tick_periodic(self) -> int:
        self._tick_counter += 1
        if self._tick_counter < self.config.interval_ticks:
            return 0
        self._tick_counter = 0
        return self._queue_burst(self.config.vehicles_per_interval)

    def _tick_one_shot(self) -> int:
        if self._burst_executed:
            return 0
        queued = self._queue_burst(self.config.total_vehicles)
        if queued:
            self._burst_executed = True
        return queued

    def _queue_burst(self, n_vehicles: int) -> int:
        if self.route_catalog.is_empty():
            self._empty_catalog_log.warning("load generator: no routes available")
            return 0

        queued = 0
        for _ in range(n_vehicles):
            route = self.route_catalog.random_route(self.rng)
            if self.spawn_queue.enqueue(route.route_id, self.config.vehicle_type, 1):
                queued += 1

        logger.info(
            "load generator queued %d vehicles across %d routes",
            queued,
            len(self.route_catalog),
        )
        return queued
