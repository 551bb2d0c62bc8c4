import logging
import time
from dataclasses import dataclass
from typing import Callable

from modules.engine import SimulationEngine
from modules.errors import EngineUnavailableError
from modules.vehicle_tracker import VehicleSnapshot


logger = logging.getLogger(__name__)

MIN_INTERVAL_MS = 50


@dataclass
class SignalRuleConfig:
    """
    Threshold rule driving one traffic light from the load on one edge.

    Attributes:
        light_id (str | None): Traffic light to control.
        watched_edge_id (str | None): Edge whose vehicle count is observed.
        vehicle_threshold (int): Vehicles on the edge at or above which the green phase is set.
        debounce_interval_ms (int): Minimum time between two rule-driven phase changes.
        green_phase_index (int): Phase index applied when the threshold is reached.
        red_phase_index (int): Phase index applied below the threshold.
        enabled (bool): Whether the rule is evaluated at all.
    """

    light_id: str | None = None
    watched_edge_id: str | None = None
    vehicle_threshold: int = 5
    debounce_interval_ms: int = 1000
    green_phase_index: int = 1
    red_phase_index: int = 0
    enabled: bool = False


@dataclass(frozen=True)
class TrafficLightSnapshot:
    """State of one traffic light at the end of a tick."""

    tl_id: str
    phase_index: int
    state: str
    program_id: str


@dataclass(frozen=True)
class RuleDecision:
    """A phase change applied by the rule."""

    light_id: str
    edge_id: str
    vehicles_on_edge: int
    threshold: int
    from_phase: int
    to_phase: int


class SignalRuleEngine:
    def __init__(
        self,
        engine: SimulationEngine,
        config: SignalRuleConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.config: SignalRuleConfig = config if config is not None else SignalRuleConfig()
        self._clock = clock
        self._last_apply_s: float | None = None
        self._lights: tuple[TrafficLightSnapshot, ...] = ()

    # ---- Configuration ---- #

    def configure(self, light_id: str, edge_id: str, threshold: int) -> None:
        """Set the light/edge pair and the vehicle threshold (at least 1)."""
        self.config.light_id = light_id
        self.config.watched_edge_id = edge_id
        self.config.vehicle_threshold = max(1, int(threshold))
        logger.info(
            "rule configured: light=%s edge=%s threshold=%d",
            light_id,
            edge_id,
            self.config.vehicle_threshold,
        )

    def toggle(self) -> bool:
        """Flip the rule on or off. Returns the new enabled flag."""
        self.config.enabled = not self.config.enabled
        logger.info("rule enabled=%s", self.config.enabled)
        return self.config.enabled

    def set_phases(self, red_phase_index: int, green_phase_index: int) -> None:
        """Override the phase indices for tlLogics that do not use 0 = red, 1 = green."""
        self.config.red_phase_index = int(red_phase_index)
        self.config.green_phase_index = int(green_phase_index)

    def set_interval_ms(self, interval_ms: int) -> None:
        self.config.debounce_interval_ms = max(MIN_INTERVAL_MS, int(interval_ms))

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def reset(self) -> None:
        """Forget the debounce window and published lights (engine session ended)."""
        self._last_apply_s = None
        self._lights = ()

    # ---- Step-time methods ---- #

    def tick(self, snapshot: VehicleSnapshot) -> RuleDecision | None:
        """Evaluate the rule against the latest snapshot. Returns the applied change, if any."""
        cfg = self.config
        if not cfg.enabled or not cfg.light_id or not cfg.watched_edge_id:
            return None

        now = self._clock()
        if (
            self._last_apply_s is not None
            and (now - self._last_apply_s) * 1000.0 < cfg.debounce_interval_ms
        ):
            return None

        vehicles_on_edge = len(snapshot.on_edge(cfg.watched_edge_id))
        target_phase = (
            cfg.green_phase_index
            if vehicles_on_edge >= cfg.vehicle_threshold
            else cfg.red_phase_index
        )

        try:
            current_phase = self.engine.get_phase(cfg.light_id)
            if current_phase == target_phase:
                return None
            self.engine.set_phase(cfg.light_id, target_phase)
        except EngineUnavailableError:
            raise
        except Exception as e:
            logger.error("rule on light %s failed: %s", cfg.light_id, e)
            return None

        self._last_apply_s = now
        decision = RuleDecision(
            light_id=cfg.light_id,
            edge_id=cfg.watched_edge_id,
            vehicles_on_edge=vehicles_on_edge,
            threshold=cfg.vehicle_threshold,
            from_phase=current_phase,
            to_phase=target_phase,
        )
        logger.info(
            "rule: light=%s edge=%s vehicles=%d threshold=%d -> phase %d",
            decision.light_id,
            decision.edge_id,
            decision.vehicles_on_edge,
            decision.threshold,
            decision.to_phase,
        )
        return decision

    # ---- Traffic light snapshot ---- #

    @property
    def lights(self) -> tuple[TrafficLightSnapshot, ...]:
        return self._lights

    def refresh_lights(self) -> tuple[TrafficLightSnapshot, ...]:
        """Read every traffic light from the engine and publish a new snapshot."""
        lights = tuple(
            TrafficLightSnapshot(
                tl_id=tl_id,
                phase_index=self.engine.get_phase(tl_id),
                state=self.engine.get_state(tl_id),
                program_id=self.engine.get_program(tl_id),
            )
            for tl_id in self.engine.get_traffic_light_ids()
        )
        self._lights = lights
        return lights
