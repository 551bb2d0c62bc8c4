import dataclasses
import logging
import random

from event_bus import EventBus
from modules.analytics import Metrics, TrafficTracking, TripAnalyticsEngine, tracking_from_snapshot
from modules.command_queue import CommandQueue
from modules.engine import SimulationEngine, TraciEngine
from modules.errors import InvalidRequestError
from modules.load_generator import LoadGenerator, LoadGeneratorPolicy
from modules.metrics_history import MetricsEntry, MetricsHistory
from modules.route_catalog import RouteCatalog
from modules.signal_rule import SignalRuleEngine, TrafficLightSnapshot
from modules.spawn_queue import SpawnQueue
from modules.step_controller import ControllerState, SimulationContext, StepController
from modules.vehicle_tracker import VehicleSnapshot, VehicleSnapshotTracker
from utils.config_loader import SimulationSettings


logger = logging.getLogger(__name__)


def _validate_vehicles(type_id: str, count: int) -> None:
    if not type_id or not str(type_id).strip():
        raise InvalidRequestError("Vehicle type id must not be empty.")
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise InvalidRequestError(f"Vehicle count must be a positive integer, got {count!r}.")


def _validate_spawn(route_id: str, type_id: str, count: int) -> None:
    if not route_id or not str(route_id).strip():
        raise InvalidRequestError("Route id must not be empty.")
    _validate_vehicles(type_id, count)


class TrafficSimulation:
    """
    One simulation: the engine, its components and the controller driving them.

    This is the surface presentation layers and the CLI talk to. Commands are
    validated here, on the caller's thread, and then queued so they are applied
    at the start of the next tick on the thread running it. Reads return the
    latest published snapshots and never touch the engine.
    """

    def __init__(
        self,
        engine: SimulationEngine,
        route_catalog: RouteCatalog,
        settings: SimulationSettings | None = None,
        events: EventBus | None = None,
        rng: random.Random | None = None,
        clock=None,
    ):
        settings = settings if settings is not None else SimulationSettings()
        self.settings = settings
        self.route_catalog = route_catalog
        self._rng = rng if rng is not None else random.Random(settings.sumo.seed)
        self.default_vehicle_type = settings.vehicles.default_type

        clock_kwargs = {"clock": clock} if clock is not None else {}

        spawn_queue = SpawnQueue(engine, route_catalog)
        self.context = SimulationContext(
            engine=engine,
            route_catalog=route_catalog,
            spawn_queue=spawn_queue,
            tracker=VehicleSnapshotTracker(
                engine, fallback_edge_length_m=settings.vehicles.fallback_edge_length_m
            ),
            rule_engine=SignalRuleEngine(
                engine, dataclasses.replace(settings.signal_rule), **clock_kwargs
            ),
            load_generator=LoadGenerator(
                spawn_queue,
                route_catalog,
                dataclasses.replace(settings.load_generator),
                rng=self._rng,
            ),
            analytics=TripAnalyticsEngine(settings.analytics.max_finished_trips),
            history=MetricsHistory(settings.analytics.history_max_records),
            commands=CommandQueue(),
            events=events if events is not None else EventBus(),
        )
        self.controller = StepController(self.context, settings.controller, **clock_kwargs)

    @classmethod
    def from_settings(cls, settings: SimulationSettings, events: EventBus | None = None):
        """Build a TraCI-backed simulation; the route catalog is loaded once here."""
        if not settings.route_file:
            raise ValueError("A route file is required to build the route catalog.")
        catalog = RouteCatalog.from_route_file(settings.route_file)
        logger.info("loaded %d routes from %s", len(catalog), settings.route_file)
        return cls(TraciEngine(settings.sumo), catalog, settings, events=events)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    # ---- Lifecycle ---- #

    @property
    def state(self) -> ControllerState:
        return self.controller.state

    @property
    def events(self) -> EventBus:
        return self.context.events

    def run(self) -> None:
        self.controller.run()

    def play(self) -> bool:
        return self.controller.play()

    def pause(self) -> bool:
        return self.controller.pause()

    def step_once(self) -> bool:
        return self.controller.step_once()

    def restart(self) -> None:
        self.controller.restart()

    def shutdown(self) -> None:
        self.controller.shutdown()

    # ---- Spawning ---- #

    def enqueue_spawn(self, route_id: str, type_id: str | None = None, count: int = 1) -> None:
        """Queue `count` vehicles on a route. Raises InvalidRequestError for bad input."""
        type_id = type_id if type_id is not None else self.default_vehicle_type
        _validate_spawn(route_id, type_id, count)
        queue = self.context.spawn_queue
        self.context.commands.submit(
            "enqueue_spawn", lambda: queue.enqueue(route_id, type_id, count)
        )

    def enqueue_spawn_on_route_index(
        self, index: int, type_id: str | None = None, count: int = 1
    ) -> str:
        """Queue vehicles on the catalog route at `index`. Returns the route id."""
        try:
            route = self.route_catalog.get(index)
        except IndexError as e:
            raise InvalidRequestError(str(e)) from e
        self.enqueue_spawn(route.route_id, type_id, count)
        return route.route_id

    def enqueue_random_spawn(self, type_id: str | None = None, count: int = 1) -> None:
        """Queue `count` single-vehicle requests spread uniformly over all routes."""
        type_id = type_id if type_id is not None else self.default_vehicle_type
        if self.route_catalog.is_empty():
            raise InvalidRequestError("No routes available.")
        _validate_vehicles(type_id, count)

        queue, catalog, rng = self.context.spawn_queue, self.route_catalog, self._rng

        def _apply():
            for _ in range(count):
                queue.enqueue(catalog.random_route(rng).route_id, type_id, 1)

        self.context.commands.submit("enqueue_random_spawn", _apply)

    # ---- Signal rule ---- #

    def configure_rule(self, light_id: str, edge_id: str, threshold: int) -> None:
        if not light_id or not edge_id:
            raise InvalidRequestError("Rule needs both a traffic light id and an edge id.")
        rule = self.context.rule_engine
        self.context.commands.submit(
            "configure_rule", lambda: rule.configure(light_id, edge_id, threshold)
        )

    def toggle_rule(self) -> None:
        self.context.commands.submit("toggle_rule", self.context.rule_engine.toggle)

    def set_rule_phases(self, red_phase_index: int, green_phase_index: int) -> None:
        rule = self.context.rule_engine
        self.context.commands.submit(
            "set_rule_phases", lambda: rule.set_phases(red_phase_index, green_phase_index)
        )

    def set_rule_interval_ms(self, interval_ms: int) -> None:
        rule = self.context.rule_engine
        self.context.commands.submit(
            "set_rule_interval_ms", lambda: rule.set_interval_ms(interval_ms)
        )

    @property
    def rule_enabled(self) -> bool:
        return self.context.rule_engine.enabled

    # ---- Load generator ---- #

    def configure_load_generator(self, count: int) -> None:
        generator = self.context.load_generator
        self.context.commands.submit(
            "configure_load_generator", lambda: generator.configure(count)
        )

    def toggle_load_generator(self) -> None:
        self.context.commands.submit(
            "toggle_load_generator", self.context.load_generator.toggle
        )

    def set_load_generator_policy(self, policy: LoadGeneratorPolicy) -> None:
        generator = self.context.load_generator
        self.context.commands.submit(
            "set_load_generator_policy", lambda: generator.set_policy(policy)
        )

    @property
    def load_generator_enabled(self) -> bool:
        return self.context.load_generator.enabled

    # ---- Manual traffic light control ---- #

    def set_light_phase(self, tl_id: str, phase_index: int) -> None:
        engine = self.context.engine
        self.context.commands.submit(
            "set_light_phase", lambda: engine.set_phase(tl_id, phase_index)
        )

    def set_light_state(self, tl_id: str, state: str) -> None:
        engine = self.context.engine
        self.context.commands.submit(
            "set_light_state", lambda: engine.set_state(tl_id, state)
        )

    def set_light_program(self, tl_id: str, program_id: str) -> None:
        engine = self.context.engine
        self.context.commands.submit(
            "set_light_program", lambda: engine.set_program(tl_id, program_id)
        )

    # ---- Reads ---- #

    def get_latest_vehicle_snapshot(self) -> VehicleSnapshot:
        return self.context.tracker.snapshot

    def get_latest_signal_snapshot(self) -> tuple[TrafficLightSnapshot, ...]:
        return self.context.rule_engine.lights

    def build_tracking_sample(self) -> TrafficTracking:
        return tracking_from_snapshot(self.context.tracker.snapshot)

    def compute_metrics(self, sample: TrafficTracking | None = None) -> Metrics:
        """Metrics for `sample`, or for the latest vehicle snapshot when omitted."""
        if sample is None:
            sample = self.build_tracking_sample()
        return self.context.analytics.compute(sample)

    def get_latest_metrics(self) -> MetricsEntry | None:
        return self.context.history.get_latest()

    @property
    def metrics_history(self) -> MetricsHistory:
        return self.context.history
