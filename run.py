import argparse
import logging
import threading
from pathlib import Path

from modules.load_generator import LoadGeneratorPolicy
from modules.simulation import TrafficSimulation
from utils.config_loader import load_simulation_settings

from event_bus import EventBus, EventNames


logger = logging.getLogger("run")


def _log_metrics(metrics) -> None:
    logger.info(
        "vehicles=%d avg_speed=%.1f km/h stopped=%d finished_trips=%d congested=%s",
        metrics.vehicle_count,
        metrics.average_speed_kmh,
        metrics.stopped_vehicle_count,
        metrics.finished_trip_count,
        ",".join(metrics.congested_edges()) or "-",
    )


def run(
    config_file: str,
    ticks: int | None = None,
    load_generator: bool = False,
    policy: str | None = None,
    rule: bool = False,
    metrics_csv: str | None = None,
    event_bus: EventBus | None = None,
) -> TrafficSimulation:
    """
    Run one simulation from a YAML config.

    With `ticks` the simulation is stepped that many times on this thread;
    without it the background driver runs until interrupted.
    """
    event_bus = event_bus if event_bus is not None else EventBus()
    event_bus.emit(EventNames.SIMULATION_INFO.value, "Loading simulation config...")
    settings = load_simulation_settings(config_file)

    # Command line switches override the YAML
    if load_generator:
        settings.load_generator.enabled = True
    if policy is not None:
        settings.load_generator.policy = LoadGeneratorPolicy(policy)
    if rule:
        if not settings.signal_rule.light_id or not settings.signal_rule.watched_edge_id:
            raise ValueError("--rule needs 'light_id' and 'watched_edge_id' in signal_rule.")
        settings.signal_rule.enabled = True

    event_bus.subscribe(EventNames.METRICS_UPDATED.value, _log_metrics)
    event_bus.subscribe(
        EventNames.RULE_APPLIED.value,
        lambda d: logger.info("light %s -> phase %d", d.light_id, d.to_phase),
    )

    sim = TrafficSimulation.from_settings(settings, events=event_bus)
    with sim:
        sim.run()
        if ticks is not None:
            for _ in range(ticks):
                sim.step_once()
        else:
            sim.play()
            try:
                threading.Event().wait()
            except KeyboardInterrupt:
                logger.info("interrupted")
            sim.pause()

        latest = sim.get_latest_metrics()
        if latest is None:
            _log_metrics(sim.compute_metrics())

        if metrics_csv:
            out = Path(metrics_csv)
            out.parent.mkdir(parents=True, exist_ok=True)
            sim.metrics_history.to_dataframe().to_csv(out)
            logger.info("metrics history written to %s", out.resolve())

    event_bus.emit(EventNames.SIMULATION_INFO.value, "Simulation finished.")
    return sim


def main():
    ap = argparse.ArgumentParser(
        description="Run a SUMO simulation with spawning, a signal rule and live metrics."
    )
    ap.add_argument(
        "--config-file", type=str, required=True, help="YAML simulation config."
    )
    ap.add_argument(
        "--ticks",
        type=int,
        default=None,
        help="Step this many ticks and exit. Runs until Ctrl+C when omitted.",
    )
    ap.add_argument(
        "--load-generator", action="store_true", help="Enable the load generator."
    )
    ap.add_argument(
        "--policy",
        choices=[p.value for p in LoadGeneratorPolicy],
        default=None,
        help="Load generator policy (overrides the config).",
    )
    ap.add_argument("--rule", action="store_true", help="Enable the signal rule.")
    ap.add_argument(
        "--metrics-csv",
        type=str,
        default=None,
        help="Optional path to write the metrics history as CSV.",
    )
    ap.add_argument("--log-level", type=str, default="INFO", help="Logging level.")
    args = ap.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    run(
        config_file=args.config_file,
        ticks=args.ticks,
        load_generator=args.load_generator,
        policy=args.policy,
        rule=args.rule,
        metrics_csv=args.metrics_csv,
    )


if __name__ == "__main__":
    main()
