import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    """A state change requested by a caller thread, applied inside the next tick."""

    name: str
    apply: Callable[[], Any]


class CommandQueue:
    """
    Single serialization point for caller intents (spawn, rule, load generator, lights).

    Any thread may submit; only the thread running a tick calls `apply_pending`,
    so the components behind the commands are never mutated concurrently.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: deque[Command] = deque()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, name: str, apply: Callable[[], Any]) -> None:
        with self._lock:
            self._pending.append(Command(name=name, apply=apply))

    def apply_pending(self) -> int:
        """Apply every command submitted so far, in order. Returns how many were applied."""
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()

        for command in batch:
            try:
                command.apply()
            except Exception:
                logger.exception("command %s failed", command.name)

        return len(batch)

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()
