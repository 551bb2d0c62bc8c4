from pathlib import Path
from typing import Any

import yaml

from dataclasses import dataclass, field

from modules.analytics import DEFAULT_MAX_FINISHED_TRIPS
from modules.load_generator import LoadGeneratorConfig, LoadGeneratorPolicy
from modules.metrics_history import DEFAULT_MAX_RECORDS
from modules.signal_rule import MIN_INTERVAL_MS, SignalRuleConfig
from modules.spawn_queue import DEFAULT_MAX_PER_TICK, DEFAULT_VEHICLE_TYPE
from modules.step_controller import ControllerSettings
from modules.vehicle_tracker import DEFAULT_EDGE_LENGTH_M
from utils.sumo_helpers import SUMOConfig


@dataclass
class VehicleSettings:
    """
    Vehicle defaults.

    Attributes:
        default_type (str): Vehicle type used when a spawn request names none.
        fallback_edge_length_m (float): Length assumed for edges SUMO cannot report.
    """

    default_type: str = DEFAULT_VEHICLE_TYPE
    fallback_edge_length_m: float = DEFAULT_EDGE_LENGTH_M


@dataclass
class AnalyticsSettings:
    """
    Analytics retention.

    Attributes:
        history_max_records (int): Metrics samples kept in the rolling history.
        max_finished_trips (int): Finished travel times kept for trip statistics.
    """

    history_max_records: int = DEFAULT_MAX_RECORDS
    max_finished_trips: int = DEFAULT_MAX_FINISHED_TRIPS


@dataclass
class SimulationSettings:
    """Everything needed to build one simulation."""

    sumo: SUMOConfig = field(default_factory=lambda: SUMOConfig(sumocfg_filepath=""))
    route_file: str | None = None
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    vehicles: VehicleSettings = field(default_factory=VehicleSettings)
    load_generator: LoadGeneratorConfig = field(default_factory=LoadGeneratorConfig)
    signal_rule: SignalRuleConfig = field(default_factory=SignalRuleConfig)
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)


def _get_section(config: dict[str, Any], name: str) -> dict[str, Any]:
    """Return an optional mapping section; a missing section means defaults."""
    section = config.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"Invalid '{name}' configuration section.")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, where: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {where} config must be a positive integer.")
    return value


def _positive_float(
    section: dict[str, Any], key: str, default: float, where: str
) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {where} config must be a positive number.")
    return float(value)


def _convert_str_to_policy(policy_str: str) -> LoadGeneratorPolicy:
    """Convert a string to a LoadGeneratorPolicy enum instance."""
    key = str(policy_str).strip().lower()
    try:
        return LoadGeneratorPolicy(key)
    except ValueError as e:
        raise ValueError(
            f"Error converting '{policy_str}' to LoadGeneratorPolicy instance: {e}"
        )


def _build_sumo_config(config_dict: dict[str, Any], base_dir: Path) -> SUMOConfig:
    """Build a SUMOConfig instance from a config dictionary."""
    # Validate sumocfg file
    if "sumocfg" not in config_dict or not isinstance(
        config_dict["sumocfg"], (str, Path)
    ):
        raise ValueError("Missing or invalid 'sumocfg' in sumo config.")

    return SUMOConfig(
        sumocfg_filepath=str(base_dir / config_dict["sumocfg"]),
        nogui=not bool(config_dict.get("gui", False)),
        seed=config_dict.get("seed", 42),
        step_length_s=_positive_float(config_dict, "step_length_s", 0.1, "sumo"),
        time_to_teleport=config_dict.get("time_to_teleport_s", -1),
        quiet=bool(config_dict.get("quiet", True)),
        label=str(config_dict.get("label", "default")),
    )


def _build_controller_settings(
    config_dict: dict[str, Any], analytics_dict: dict[str, Any]
) -> ControllerSettings:
    """Build ControllerSettings; the sampling period lives in the analytics section."""
    every = analytics_dict.get("every_ticks", 0)
    if isinstance(every, bool) or not isinstance(every, int) or every < 0:
        raise ValueError("'every_ticks' in analytics config must be a non-negative integer.")

    return ControllerSettings(
        tick_interval_s=_positive_float(config_dict, "tick_interval_s", 0.1, "controller"),
        join_timeout_s=_positive_float(config_dict, "join_timeout_s", 0.5, "controller"),
        max_spawns_per_tick=_positive_int(
            config_dict, "max_spawns_per_tick", DEFAULT_MAX_PER_TICK, "controller"
        ),
        analytics_every_ticks=every,
        unavailable_log_interval_s=_positive_float(
            config_dict, "unavailable_log_interval_s", 1.5, "controller"
        ),
    )


def _build_vehicle_settings(config_dict: dict[str, Any]) -> VehicleSettings:
    default_type = config_dict.get("default_type", DEFAULT_VEHICLE_TYPE)
    if not isinstance(default_type, str) or not default_type.strip():
        raise ValueError("Missing or invalid 'default_type' in vehicles config.")

    return VehicleSettings(
        default_type=default_type,
        fallback_edge_length_m=_positive_float(
            config_dict, "fallback_edge_length_m", DEFAULT_EDGE_LENGTH_M, "vehicles"
        ),
    )


def _build_load_generator_config(
    config_dict: dict[str, Any], default_vehicle_type: str
) -> LoadGeneratorConfig:
    """Build a LoadGeneratorConfig instance from a config dictionary."""
    defaults = LoadGeneratorConfig()
    policy = (
        _convert_str_to_policy(config_dict["policy"])
        if "policy" in config_dict
        else defaults.policy
    )

    return LoadGeneratorConfig(
        policy=policy,
        interval_ticks=_positive_int(
            config_dict, "interval_ticks", defaults.interval_ticks, "load_generator"
        ),
        vehicles_per_interval=_positive_int(
            config_dict,
            "vehicles_per_interval",
            defaults.vehicles_per_interval,
            "load_generator",
        ),
        total_vehicles=_positive_int(
            config_dict, "total_vehicles", defaults.total_vehicles, "load_generator"
        ),
        vehicle_type=str(config_dict.get("vehicle_type", default_vehicle_type)),
        enabled=bool(config_dict.get("enabled", False)),
    )


def _build_signal_rule_config(config_dict: dict[str, Any]) -> SignalRuleConfig:
    """Build a SignalRuleConfig instance from a config dictionary."""
    defaults = SignalRuleConfig()

    light_id = config_dict.get("light_id")
    edge_id = config_dict.get("watched_edge_id")
    for key, value in (("light_id", light_id), ("watched_edge_id", edge_id)):
        if value is not None and not isinstance(value, str):
            raise ValueError(f"'{key}' in signal_rule config must be a string or null.")

    enabled = bool(config_dict.get("enabled", False))
    if enabled and (not light_id or not edge_id):
        raise ValueError(
            "An enabled signal_rule needs both 'light_id' and 'watched_edge_id'."
        )

    interval_ms = _positive_int(
        config_dict, "debounce_interval_ms", defaults.debounce_interval_ms, "signal_rule"
    )
    phases = {}
    for key in ("green_phase_index", "red_phase_index"):
        value = config_dict.get(key, getattr(defaults, key))
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"'{key}' in signal_rule config must be a non-negative integer.")
        phases[key] = value

    return SignalRuleConfig(
        light_id=light_id,
        watched_edge_id=edge_id,
        vehicle_threshold=_positive_int(
            config_dict, "vehicle_threshold", defaults.vehicle_threshold, "signal_rule"
        ),
        debounce_interval_ms=max(MIN_INTERVAL_MS, interval_ms),
        enabled=enabled,
        **phases,
    )


def _build_analytics_settings(config_dict: dict[str, Any]) -> AnalyticsSettings:
    return AnalyticsSettings(
        history_max_records=_positive_int(
            config_dict, "history_max_records", DEFAULT_MAX_RECORDS, "analytics"
        ),
        max_finished_trips=_positive_int(
            config_dict, "max_finished_trips", DEFAULT_MAX_FINISHED_TRIPS, "analytics"
        ),
    )


def load_simulation_settings(yaml_path: str | Path) -> SimulationSettings:
    """
    Load and validate the simulation configuration from a YAML file.

    Only the `sumo` section is required. File paths are resolved relative to the
    YAML file's directory.
    """
    yaml_path = Path(yaml_path)
    with open(yaml_path, "r") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError("Configuration root must be a mapping.")

    base_dir = yaml_path.parent

    # Validate and parse SUMO config
    if "sumo" not in config or not isinstance(config["sumo"], dict):
        raise ValueError("Missing or invalid 'sumo' configuration section.")
    sumo_dict = config["sumo"]
    sumo_config = _build_sumo_config(sumo_dict, base_dir)

    route_file = sumo_dict.get("route_file")
    if route_file is not None:
        if not isinstance(route_file, (str, Path)):
            raise ValueError("Invalid 'route_file' in sumo config.")
        route_file = str(base_dir / route_file)

    analytics_dict = _get_section(config, "analytics")
    vehicles = _build_vehicle_settings(_get_section(config, "vehicles"))

    return SimulationSettings(
        sumo=sumo_config,
        route_file=route_file,
        controller=_build_controller_settings(
            _get_section(config, "controller"), analytics_dict
        ),
        vehicles=vehicles,
        load_generator=_build_load_generator_config(
            _get_section(config, "load_generator"), vehicles.default_type
        ),
        signal_rule=_build_signal_rule_config(_get_section(config, "signal_rule")),
        analytics=_build_analytics_settings(analytics_dict),
    )
