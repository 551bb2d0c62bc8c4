import logging
import time
from typing import Callable


class ThrottledLogger:
    """
    Wraps a logger so repeated messages are emitted at most once per interval.

    Used for failures that repeat every tick while the engine is unreachable.
    Messages suppressed inside the window are counted and reported with the
    next emitted message.
    """

    def __init__(
        self,
        logger: logging.Logger,
        interval_s: float = 1.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.interval_s = interval_s
        self._clock = clock
        self._last_emit: float | None = None
        self._suppressed = 0

    def log(self, level: int, msg: str, *args) -> bool:
        """Log the message unless one was emitted within the interval. Returns True if emitted."""
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self.interval_s:
            self._suppressed += 1
            return False

        if self._suppressed:
            msg = f"{msg} ({self._suppressed} similar messages suppressed)"
        self.logger.log(level, msg, *args)
        self._last_emit = now
        self._suppressed = 0
        return True

    def warning(self, msg: str, *args) -> bool:
        return self.log(logging.WARNING, msg, *args)

    def error(self, msg: str, *args) -> bool:
        return self.log(logging.ERROR, msg, *args)

    def reset(self) -> None:
        self._last_emit = None
        self._suppressed = 0
