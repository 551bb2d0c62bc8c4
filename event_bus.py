import logging
import threading
from collections import defaultdict

from enum import Enum


logger = logging.getLogger(__name__)


class EventNames(Enum):
    SIMULATION_INFO = "simulation_info"
    SIMULATION_STARTED = "simulation_started"
    SIMULATION_RUNNING = "simulation_running"
    SIMULATION_PAUSED = "simulation_paused"
    SIMULATION_STOPPED = "simulation_stopped"
    SIMULATION_FAILED = "simulation_failed"
    TICK_COMPLETED = "tick_completed"
    RULE_APPLIED = "rule_applied"
    METRICS_UPDATED = "metrics_updated"


def _event_key(event_name: "EventNames | str") -> str:
    return event_name.value if isinstance(event_name, EventNames) else event_name


class EventBus:
    """
    Name-keyed publish/subscribe between the tick thread and its observers.

    Events are emitted from whichever thread runs the tick, while subscribers
    come and go from caller threads. Callbacks run on the emitting thread, so
    they should be quick. A failing callback is logged and the remaining
    callbacks still run.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, list] = defaultdict(list)

    def subscribe(self, event_name: "EventNames | str", callback) -> None:
        with self._lock:
            self._subscribers[_event_key(event_name)].append(callback)

    def unsubscribe(self, event_name: "EventNames | str", callback) -> bool:
        """Remove a callback. Returns False when it was not subscribed."""
        with self._lock:
            callbacks = self._subscribers.get(_event_key(event_name), [])
            if callback not in callbacks:
                return False
            callbacks.remove(callback)
            return True

    def subscriber_count(self, event_name: "EventNames | str") -> int:
        with self._lock:
            return len(self._subscribers.get(_event_key(event_name), []))

    def emit(self, event_name: "EventNames | str", data=None) -> None:
        key = _event_key(event_name)
        with self._lock:
            callbacks = list(self._subscribers.get(key, []))

        for callback in callbacks:
            try:
                callback(data)
            except Exception:
                logger.exception("Error in event subscriber for %s", key)
