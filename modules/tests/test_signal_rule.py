# modules/tests/test_signal_rule.py
import pytest

from modules.errors import EngineUnavailableError
from modules.signal_rule import SignalRuleConfig, SignalRuleEngine
from modules.vehicle_tracker import VehicleSnapshot, VehicleSnapshotEntry


def _snapshot(edge_id: str, n: int) -> VehicleSnapshot:
    return VehicleSnapshot(
        sim_time_s=1.0,
        vehicles=tuple(
            VehicleSnapshotEntry(f"v{i}", edge_id, "r1", "car", 0.0, 0.0, 0.0)
            for i in range(n)
        ),
    )


# ------------------------- Fixtures -------------------------

@pytest.fixture
def rule(engine, clock):
    engine.add_light("J1", phase=0)
    r = SignalRuleEngine(engine, clock=clock)
    r.configure("J1", "edgeA", 3)
    return r


# ------------------------- Configuration -------------------------

def test_disabled_by_default(engine, clock):
    r = SignalRuleEngine(engine, clock=clock)
    assert r.enabled is False
    assert r.tick(_snapshot("edgeA", 10)) is None


def test_threshold_clamped_to_one(rule):
    rule.configure("J1", "edgeA", 0)
    assert rule.config.vehicle_threshold == 1


def test_interval_clamped(rule):
    rule.set_interval_ms(10)
    assert rule.config.debounce_interval_ms == 50


def test_toggle(rule):
    assert rule.toggle() is True
    assert rule.toggle() is False


def test_requires_both_ids(engine, clock):
    engine.add_light("J1")
    r = SignalRuleEngine(engine, SignalRuleConfig(light_id="J1", enabled=True), clock=clock)
    assert r.tick(_snapshot("edgeA", 10)) is None
    assert engine.set_phase_calls == []


# ------------------------- Tick -------------------------

def test_green_at_threshold(rule, engine):
    rule.toggle()
    decision = rule.tick(_snapshot("edgeA", 3))

    assert engine.phases["J1"] == 1
    assert decision.from_phase == 0
    assert decision.to_phase == 1
    assert decision.vehicles_on_edge == 3


def test_below_threshold_keeps_red(rule, engine):
    rule.toggle()
    assert rule.tick(_snapshot("edgeA", 2)) is None
    assert engine.set_phase_calls == []


def test_vehicles_on_other_edges_ignored(rule, engine):
    rule.toggle()
    assert rule.tick(_snapshot("edgeB", 20)) is None
    assert engine.phases["J1"] == 0


def test_debounce_after_applied_change(rule, engine, clock):
    rule.toggle()
    rule.tick(_snapshot("edgeA", 5))
    assert engine.phases["J1"] == 1

    clock.advance(0.5)
    assert rule.tick(_snapshot("edgeA", 0)) is None
    assert engine.phases["J1"] == 1

    clock.advance(0.6)
    decision = rule.tick(_snapshot("edgeA", 0))
    assert decision.to_phase == 0
    assert engine.set_phase_calls == [("J1", 1), ("J1", 0)]


def test_no_change_does_not_start_debounce(rule, engine, clock):
    rule.toggle()
    assert rule.tick(_snapshot("edgeA", 0)) is None

    clock.advance(0.01)
    assert rule.tick(_snapshot("edgeA", 4)) is not None


def test_custom_phases(rule, engine):
    rule.set_phases(red_phase_index=2, green_phase_index=4)
    rule.toggle()
    rule.tick(_snapshot("edgeA", 3))
    assert engine.phases["J1"] == 4


def test_failure_does_not_disable_rule(rule, engine, clock):
    rule.toggle()
    engine.fail_phase_calls = True
    assert rule.tick(_snapshot("edgeA", 5)) is None
    assert rule.enabled

    engine.fail_phase_calls = False
    clock.advance(0.01)
    assert rule.tick(_snapshot("edgeA", 5)) is not None


def test_unavailable_engine_propagates(rule, engine):
    rule.toggle()
    engine.unavailable = True
    with pytest.raises(EngineUnavailableError):
        rule.tick(_snapshot("edgeA", 5))


def test_reset_clears_debounce(rule, engine, clock):
    rule.toggle()
    rule.tick(_snapshot("edgeA", 5))
    rule.reset()
    assert rule.tick(_snapshot("edgeA", 0)) is not None


# ------------------------- Light snapshot -------------------------

def test_refresh_lights(engine, clock):
    engine.add_light("J2", phase=3, state="GGrr", program="off")
    engine.add_light("J1", phase=1, state="rrGG", program="0")
    r = SignalRuleEngine(engine, clock=clock)

    assert r.lights == ()
    lights = r.refresh_lights()

    assert [l.tl_id for l in lights] == ["J1", "J2"]
    assert lights[1].phase_index == 3
    assert lights[1].state == "GGrr"
    assert lights[1].program_id == "off"
    assert r.lights is lights
