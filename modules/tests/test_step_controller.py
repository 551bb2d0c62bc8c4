# modules/tests/test_step_controller.py
import threading
import time

import pytest

from event_bus import EventBus, EventNames
from modules.errors import EngineFatalError
from modules.load_generator import LoadGenerator, LoadGeneratorConfig
from modules.signal_rule import SignalRuleEngine
from modules.spawn_queue import SpawnQueue
from modules.step_controller import (
    ControllerSettings,
    ControllerState,
    SimulationContext,
    StepController,
)
from modules.vehicle_tracker import VehicleSnapshotTracker


def _wait_for(predicate, timeout_s: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


# ------------------------- Fixtures -------------------------

@pytest.fixture
def context(stopped_engine, catalog, clock):
    queue = SpawnQueue(stopped_engine, catalog)
    return SimulationContext(
        engine=stopped_engine,
        route_catalog=catalog,
        spawn_queue=queue,
        tracker=VehicleSnapshotTracker(stopped_engine),
        rule_engine=SignalRuleEngine(stopped_engine, clock=clock),
        load_generator=LoadGenerator(queue, catalog, LoadGeneratorConfig()),
        events=EventBus(),
    )


@pytest.fixture
def events(context):
    received = []
    for name in EventNames:
        context.events.subscribe(
            name.value, lambda data, n=name: received.append((n, data))
        )
    return received


@pytest.fixture
def controller(context, clock):
    c = StepController(
        context,
        ControllerSettings(tick_interval_s=0.001, join_timeout_s=1.0, analytics_every_ticks=1),
        clock=clock,
    )
    yield c
    c.shutdown()


# ------------------------- Lifecycle -------------------------

def test_starts_stopped(controller):
    assert controller.state is ControllerState.STOPPED
    assert controller.tick_count == 0


def test_run_starts_engine_once(controller, stopped_engine, events):
    controller.run()
    controller.run()

    assert controller.state is ControllerState.PAUSED
    assert stopped_engine.start_calls == 1
    assert [n for n, _ in events] == [EventNames.SIMULATION_STARTED]


def test_failed_start_stays_stopped(controller, stopped_engine, events):
    stopped_engine.fail_start = True

    with pytest.raises(EngineFatalError):
        controller.run()

    assert controller.state is ControllerState.STOPPED
    assert events[-1][0] is EventNames.SIMULATION_FAILED


def test_step_once_auto_starts(controller, stopped_engine):
    assert controller.step_once() is True
    assert controller.state is ControllerState.PAUSED
    assert controller.tick_count == 1
    assert stopped_engine.time == 1.0


def test_play_and_pause(controller):
    assert controller.play() is True
    assert controller.play() is False
    assert controller.is_running
    assert _wait_for(lambda: controller.tick_count >= 3)

    assert controller.pause() is True
    assert controller.state is ControllerState.PAUSED
    ticks = controller.tick_count
    time.sleep(0.05)
    assert controller.tick_count == ticks


def test_pause_when_not_running_is_noop(controller, events):
    assert controller.pause() is False
    controller.run()
    assert controller.pause() is False
    assert EventNames.SIMULATION_PAUSED not in [n for n, _ in events]


def test_only_one_driver_thread(controller):
    controller.play()
    controller.play()
    drivers = [t for t in threading.enumerate() if t.name == "sim-driver"]
    assert len(drivers) == 1


def test_shutdown_is_idempotent(controller, stopped_engine, events):
    controller.shutdown()
    assert stopped_engine.close_calls == 0

    controller.play()
    controller.shutdown()
    controller.shutdown()

    assert controller.state is ControllerState.STOPPED
    assert stopped_engine.close_calls == 1
    assert [n for n, _ in events].count(EventNames.SIMULATION_STOPPED) == 1
    assert not any(t.name == "sim-driver" and t.is_alive() for t in threading.enumerate())


def test_shutdown_resets_session_state(controller, context, stopped_engine):
    controller.run()
    stopped_engine.place("v1", "e1")
    context.spawn_queue.enqueue("r1", "car", 1)
    controller.step_once()
    context.spawn_queue.enqueue("r2", "car", 500)

    assert len(context.tracker.snapshot) == 2
    assert context.spawn_queue.routes_registered
    assert len(context.history) == 1

    controller.shutdown()

    assert len(context.tracker.snapshot) == 0
    assert context.tracker.active_count() == 0
    assert not context.spawn_queue.routes_registered
    assert len(context.history) == 0
    assert context.analytics.open_trips() == 0
    assert context.spawn_queue.pending_vehicles() == 500


def test_restart(controller, stopped_engine):
    controller.step_once()
    controller.restart()

    assert controller.state is ControllerState.PAUSED
    assert stopped_engine.start_calls == 2
    assert stopped_engine.close_calls == 1


def test_play_after_shutdown(controller):
    controller.play()
    controller.shutdown()
    assert controller.play() is True
    assert _wait_for(lambda: controller.tick_count >= 1)


# ------------------------- Tick -------------------------

def test_tick_runs_stages_in_order(controller, context, stopped_engine):
    controller.run()
    order = []
    context.commands.submit("mark", lambda: order.append("command"))
    original_step = stopped_engine.step

    def step():
        order.append("engine_step")
        original_step()

    stopped_engine.step = step
    context.spawn_queue.enqueue("r1", "car", 1)
    controller.step_once()

    assert order == ["command", "engine_step"]
    # Spawned before the step, so it departs within the same tick
    assert len(context.tracker.snapshot) == 1


def test_tick_drain_is_bounded(controller, context, stopped_engine):
    controller.settings.max_spawns_per_tick = 4
    context.spawn_queue.enqueue("r1", "car", 10)

    controller.step_once()
    assert len(stopped_engine.add_vehicle_calls) == 4
    controller.step_once()
    controller.step_once()
    assert len(stopped_engine.add_vehicle_calls) == 10


def test_stage_failure_does_not_stop_tick(controller, context, stopped_engine, events):
    controller.run()

    def broken_tick():
        raise RuntimeError("generator bug")

    context.load_generator.tick = broken_tick
    stopped_engine.place("v1", "e1")

    assert controller.step_once() is False
    assert len(context.tracker.snapshot) == 1
    assert controller.step_once() is False
    assert controller.tick_count == 2

    completed = [d for n, d in events if n is EventNames.TICK_COMPLETED]
    assert completed[-1] == {"tick": 2, "sim_time": 2.0, "ok": False}


def test_unavailable_engine_is_logged_throttled(controller, stopped_engine, caplog):
    controller.run()
    stopped_engine.unavailable = True

    for _ in range(5):
        assert controller.step_once() is False

    warnings = [r for r in caplog.records if "engine unavailable" in r.getMessage()]
    assert len(warnings) == 1
    assert controller.state is ControllerState.PAUSED


def test_rule_applied_in_tick(controller, context, stopped_engine, events):
    stopped_engine.add_light("J1", phase=0)
    context.rule_engine.configure("J1", "e1", 1)
    context.rule_engine.toggle()
    controller.run()
    stopped_engine.place("v1", "e1")

    controller.step_once()

    assert stopped_engine.phases["J1"] == 1
    applied = [d for n, d in events if n is EventNames.RULE_APPLIED]
    assert applied[0].to_phase == 1
    assert context.rule_engine.lights[0].phase_index == 1


def test_metrics_sampled_into_history(controller, context, stopped_engine, events):
    controller.run()
    stopped_engine.place("v1", "e1")
    controller.step_once()
    stopped_engine.remove("v1")
    controller.step_once()

    assert controller.ctx.history.times() == [1.0, 2.0]
    latest = context.history.get_latest().metrics
    assert latest.finished_trip_count == 1
    assert any(n is EventNames.METRICS_UPDATED for n, _ in events)


def test_step_once_while_running_is_serialized(controller, stopped_engine):
    controller.play()
    for _ in range(20):
        controller.step_once()
    controller.pause()

    assert stopped_engine.time == pytest.approx(controller.tick_count * 1.0)
