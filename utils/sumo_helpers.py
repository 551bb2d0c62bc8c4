import os
import sys
import logging

from sumolib import checkBinary
import traci

from dataclasses import dataclass


logger = logging.getLogger(__name__)


@dataclass
class SUMOConfig:
    """
    Configuration for the SUMO simulation.

    Attributes:
        sumocfg_filepath (str): Path to the SUMO configuration file.
        nogui (bool): If True, start SUMO without GUI.
        seed (int | None): Random seed for the simulation. If None, no seed is set.
        step_length_s (float): Simulated seconds advanced by one step. Default is 0.1.
        time_to_teleport (int): Time in seconds before a vehicle is teleported. Default is -1 (no teleportation).
        quiet (bool): If True, silence SUMO's own warning, step and message logs.
        label (str): TraCI connection label, so several connections can coexist in one process.
    """

    sumocfg_filepath: str
    nogui: bool = True
    seed: int | None = None
    step_length_s: float = 0.1
    time_to_teleport: int = -1
    quiet: bool = True
    label: str = "default"


def _ensure_sumo_tools_on_path() -> None:
    if "SUMO_HOME" in os.environ:
        tools = os.path.join(os.environ["SUMO_HOME"], "tools")
        if tools not in sys.path:
            sys.path.append(tools)
    else:
        raise RuntimeError('Declare environment variable "SUMO_HOME"')


def build_sumo_args(config: SUMOConfig) -> list[str]:
    """Build the SUMO command line for the given configuration."""
    args = [
        checkBinary("sumo" if config.nogui else "sumo-gui"),
        "-c",
        config.sumocfg_filepath,
        "--start",
        "--step-length",
        f"{config.step_length_s}",
        "--time-to-teleport",
        str(config.time_to_teleport),
    ]

    if config.seed is not None:
        args += ["--seed", str(config.seed)]

    if config.quiet:
        args += [
            "--no-warnings",
            "--no-step-log",
            "true",
            "--log",
            os.devnull,
            "--error-log",
            os.devnull,
            "--message-log",
            os.devnull,
        ]

    return args


def start_sumo(config: SUMOConfig):
    """Start the SUMO simulation and return the labelled TraCI connection."""
    _ensure_sumo_tools_on_path()

    args = build_sumo_args(config)
    logger.info(
        "starting %s (cfg=%s, seed=%s)",
        "sumo" if config.nogui else "sumo-gui",
        config.sumocfg_filepath,
        config.seed,
    )
    traci.start(args, label=config.label)
    return traci.getConnection(config.label)


def close_sumo(connection) -> None:
    """Close the SUMO simulation."""
    try:
        connection.close(False)
    except Exception as e:
        logger.debug("closing TraCI connection failed: %s", e)
