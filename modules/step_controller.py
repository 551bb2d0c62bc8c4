"""
Run/pause/step/shutdown lifecycle of the simulation and the per-tick sequence.

Exactly one background driver thread runs ticks while RUNNING. Every other
call happens on caller threads. Ticks are serialized by a lock, so a
`step_once()` issued while the driver is running waits for the driver's tick
instead of driving the engine concurrently.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from event_bus import EventBus, EventNames
from modules.analytics import TripAnalyticsEngine, tracking_from_snapshot
from modules.command_queue import CommandQueue
from modules.engine import SimulationEngine
from modules.errors import EngineFatalError, EngineUnavailableError
from modules.load_generator import LoadGenerator
from modules.metrics_history import MetricsHistory
from modules.route_catalog import RouteCatalog
from modules.signal_rule import SignalRuleEngine
from modules.spawn_queue import DEFAULT_MAX_PER_TICK, SpawnQueue
from modules.vehicle_tracker import VehicleSnapshotTracker
from utils.log_throttle import ThrottledLogger


logger = logging.getLogger(__name__)


class ControllerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class ControllerSettings:
    """
    Pacing and limits of the tick loop.

    Attributes:
        tick_interval_s (float): Sleep between two driver ticks (best effort).
        join_timeout_s (float): How long pause/shutdown wait for the driver to exit.
        max_spawns_per_tick (int): Upper bound of vehicles injected per tick.
        analytics_every_ticks (int): Sample metrics into the history every N ticks; 0 disables.
        unavailable_log_interval_s (float): Minimum time between two "engine unavailable" log lines.
    """

    tick_interval_s: float = 0.1
    join_timeout_s: float = 0.5
    max_spawns_per_tick: int = DEFAULT_MAX_PER_TICK
    analytics_every_ticks: int = 0
    unavailable_log_interval_s: float = 1.5


@dataclass
class SimulationContext:
    """Everything one simulation owns; built once and handed to the controller."""

    engine: SimulationEngine
    route_catalog: RouteCatalog
    spawn_queue: SpawnQueue
    tracker: VehicleSnapshotTracker
    rule_engine: SignalRuleEngine
    load_generator: LoadGenerator
    analytics: TripAnalyticsEngine = field(default_factory=TripAnalyticsEngine)
    history: MetricsHistory = field(default_factory=MetricsHistory)
    commands: CommandQueue = field(default_factory=CommandQueue)
    events: EventBus = field(default_factory=EventBus)


class StepController:
    def __init__(
        self,
        context: SimulationContext,
        settings: ControllerSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = context
        self.settings = settings if settings is not None else ControllerSettings()

        self._state = ControllerState.STOPPED
        self._lifecycle_lock = threading.RLock()
        self._tick_lock = threading.Lock()
        self._driver: threading.Thread | None = None
        self._stop_event: threading.Event | None = None
        self._tick_count = 0

        self._unavailable_log = ThrottledLogger(
            logger, interval_s=self.settings.unavailable_log_interval_s, clock=clock
        )

        self._stages: list[tuple[str, Callable[[], None]]] = [
            ("commands", self._apply_commands),
            ("load_generator", self._generate_load),
            ("spawn", self._drain_spawns),
            ("engine_step", self._step_engine),
            ("vehicles", self._refresh_vehicles),
            ("signals", self._control_signals),
            ("analytics", self._sample_metrics),
        ]

    # ---- Status ---- #

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def is_running(self) -> bool:
        return self._state is ControllerState.RUNNING

    # ---- Lifecycle ---- #

    def run(self) -> None:
        """Start the engine. Does nothing once started; raises EngineFatalError if it cannot start."""
        with self._lifecycle_lock:
            if self._state is not ControllerState.STOPPED:
                return

            self._state = ControllerState.STARTING
            try:
                self.ctx.engine.start()
            except Exception as e:
                self._state = ControllerState.STOPPED
                self.ctx.events.emit(
                    EventNames.SIMULATION_FAILED.value, f"Engine start failed: {e}"
                )
                if isinstance(e, EngineFatalError):
                    raise
                raise EngineFatalError(f"Engine start failed: {e}") from e

            self._state = ControllerState.PAUSED
            logger.info("engine ready")
            self.ctx.events.emit(EventNames.SIMULATION_STARTED.value, None)

    def play(self) -> bool:
        """Start the background driver. Returns False if it was already running."""
        with self._lifecycle_lock:
            if self._state is ControllerState.STOPPED:
                self.run()

            if self._state is ControllerState.RUNNING:
                logger.info("already running")
                return False

            # One stop signal per driver; a driver that outlived its join stays stopped
            stop_event = threading.Event()
            driver = threading.Thread(
                target=self._drive, args=(stop_event,), name="sim-driver", daemon=True
            )
            self._stop_event = stop_event
            self._driver = driver
            self._state = ControllerState.RUNNING
            driver.start()

        logger.info("play")
        self.ctx.events.emit(EventNames.SIMULATION_RUNNING.value, None)
        return True

    def pause(self) -> bool:
        """Ask the driver to stop after its current tick. Returns False if it was not running."""
        with self._lifecycle_lock:
            if self._state is not ControllerState.RUNNING:
                logger.info("already paused")
                return False

            self._state = ControllerState.PAUSED
            driver = self._signal_driver_stop()

        self._join(driver)
        logger.info("paused")
        self.ctx.events.emit(EventNames.SIMULATION_PAUSED.value, None)
        return True

    def step_once(self) -> bool:
        """Run exactly one tick on the calling thread. Returns True if every stage succeeded."""
        with self._lifecycle_lock:
            if self._state is ControllerState.STOPPED:
                self.run()

        ok = self._tick()
        logger.debug("step -> tick %d", self._tick_count)
        return ok

    def restart(self) -> None:
        self.shutdown()
        self.run()

    def shutdown(self) -> None:
        """Stop the driver, release the engine and reset to STOPPED. Safe to call repeatedly."""
        with self._lifecycle_lock:
            driver = self._signal_driver_stop()
            if self._state is ControllerState.STOPPED and driver is None:
                return

            self._join(driver)

            # A driver that missed the join may still be inside a tick
            acquired = self._tick_lock.acquire(timeout=self.settings.join_timeout_s)
            try:
                try:
                    self.ctx.engine.close()
                except Exception:
                    logger.exception("closing the engine failed")
                self._reset_session()
            finally:
                if acquired:
                    self._tick_lock.release()

            self._state = ControllerState.STOPPED

        logger.info("stopped")
        self.ctx.events.emit(EventNames.SIMULATION_STOPPED.value, None)

    # ---- Driver ---- #

    def _drive(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("tick failed")
            stop_event.wait(self.settings.tick_interval_s)

    def _signal_driver_stop(self) -> threading.Thread | None:
        driver = self._driver
        if self._stop_event is not None:
            self._stop_event.set()
        self._driver = None
        self._stop_event = None
        return driver

    def _join(self, driver: threading.Thread | None) -> None:
        if driver is None or driver is threading.current_thread():
            return
        driver.join(self.settings.join_timeout_s)
        if driver.is_alive():
            logger.warning(
                "driver still busy after %.2fs; stop requested", self.settings.join_timeout_s
            )

    def _reset_session(self) -> None:
        self.ctx.tracker.reset()
        self.ctx.rule_engine.reset()
        self.ctx.spawn_queue.reset_route_registration()
        self.ctx.analytics.reset()
        self.ctx.history.reset()
        self._unavailable_log.reset()

    # ---- Tick ---- #

    def _tick(self) -> bool:
        with self._tick_lock:
            self._tick_count += 1
            ok = True
            for name, stage in self._stages:
                try:
                    stage()
                except EngineUnavailableError as e:
                    ok = False
                    self._unavailable_log.warning("%s skipped, engine unavailable: %s", name, e)
                except Exception:
                    ok = False
                    logger.exception("tick stage %s failed", name)

            tick = self._tick_count

        self.ctx.events.emit(
            EventNames.TICK_COMPLETED.value,
            {"tick": tick, "sim_time": self.ctx.tracker.snapshot.sim_time_s, "ok": ok},
        )
        return ok

    def _apply_commands(self) -> None:
        self.ctx.commands.apply_pending()

    def _generate_load(self) -> None:
        self.ctx.load_generator.tick()

    def _drain_spawns(self) -> None:
        self.ctx.spawn_queue.drain(self.settings.max_spawns_per_tick)

    def _step_engine(self) -> None:
        self.ctx.engine.step()

    def _refresh_vehicles(self) -> None:
        self.ctx.tracker.refresh()

    def _control_signals(self) -> None:
        decision = self.ctx.rule_engine.tick(self.ctx.tracker.snapshot)
        if decision is not None:
            self.ctx.events.emit(EventNames.RULE_APPLIED.value, decision)
        self.ctx.rule_engine.refresh_lights()

    def _sample_metrics(self) -> None:
        every = self.settings.analytics_every_ticks
        if every <= 0 or self._tick_count % every != 0:
            return

        snapshot = self.ctx.tracker.snapshot
        latest = self.ctx.history.get_latest()
        if latest is not None and snapshot.sim_time_s <= latest.t:
            return

        metrics = self.ctx.analytics.compute(tracking_from_snapshot(snapshot))
        self.ctx.history.log(snapshot.sim_time_s, metrics)
        self.ctx.events.emit(EventNames.METRICS_UPDATED.value, metrics)
