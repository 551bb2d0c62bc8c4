# utils/tests/test_sumo_helpers.py
import os

import pytest

import utils.sumo_helpers as sumo_helpers
from utils.sumo_helpers import SUMOConfig, build_sumo_args


@pytest.fixture(autouse=True)
def fake_binary(monkeypatch):
    monkeypatch.setattr(sumo_helpers, "checkBinary", lambda name: f"/usr/bin/{name}")


def test_headless_args():
    args = build_sumo_args(
        SUMOConfig(sumocfg_filepath="net.sumocfg", seed=7, step_length_s=0.5, quiet=False)
    )

    assert args == [
        "/usr/bin/sumo",
        "-c",
        "net.sumocfg",
        "--start",
        "--step-length",
        "0.5",
        "--time-to-teleport",
        "-1",
        "--seed",
        "7",
    ]


def test_gui_and_quiet_flags():
    args = build_sumo_args(SUMOConfig(sumocfg_filepath="net.sumocfg", nogui=False))

    assert args[0] == "/usr/bin/sumo-gui"
    assert "--seed" not in args
    assert "--no-warnings" in args
    assert args[args.index("--log") + 1] == os.devnull


def test_start_requires_sumo_home(monkeypatch):
    monkeypatch.delenv("SUMO_HOME", raising=False)
    with pytest.raises(RuntimeError, match="SUMO_HOME"):
        sumo_helpers.start_sumo(SUMOConfig(sumocfg_filepath="net.sumocfg"))


def test_start_uses_labelled_connection(monkeypatch, tmp_path):
    monkeypatch.setenv("SUMO_HOME", str(tmp_path))
    monkeypatch.setattr(sumo_helpers.sys, "path", list(sumo_helpers.sys.path))
    started = {}
    monkeypatch.setattr(
        sumo_helpers.traci, "start", lambda args, label: started.update(label=label)
    )
    monkeypatch.setattr(sumo_helpers.traci, "getConnection", lambda label: f"conn:{label}")

    conn = sumo_helpers.start_sumo(SUMOConfig(sumocfg_filepath="a.sumocfg", label="ui"))

    assert started == {"label": "ui"}
    assert conn == "conn:ui"


def test_close_swallows_errors():
    class Broken:
        def close(self, wait):
            raise OSError("already closed")

    sumo_helpers.close_sumo(Broken())
