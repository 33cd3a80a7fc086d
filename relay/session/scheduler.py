"""
Timer scheduling for the session watchdog.

Timers never touch session state themselves: their callbacks only post an
event into the owning session's event stream.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger(__name__)


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        """Cancel the timer. Idempotent."""
        ...


class Scheduler(ABC):
    """Arms one-shot and periodic timers."""

    @abstractmethod
    def call_later(self, delay_sec: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    @abstractmethod
    def call_every(self, interval_sec: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class _OneShotTimer(TimerHandle):
    def __init__(self, delay_sec: float, callback: Callable[[], None]):
        self._timer = threading.Timer(delay_sec, callback)
        self._timer.daemon = True
        self._timer.name = "RelayTimer"

    def start(self) -> "_OneShotTimer":
        self._timer.start()
        return self

    def cancel(self) -> None:
        self._timer.cancel()


class _RepeatingTimer(TimerHandle):
    def __init__(self, interval_sec: float, callback: Callable[[], None]):
        self._interval = interval_sec
        self._callback = callback
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name="RelayRepeatingTimer")

    def start(self) -> "_RepeatingTimer":
        self._thread.start()
        return self

    def _run(self) -> None:
        # wait() returns True once cancelled
        while not self._cancelled.wait(timeout=self._interval):
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Repeating timer callback failed: {e}", exc_info=True)

    def cancel(self) -> None:
        self._cancelled.set()


class ThreadingScheduler(Scheduler):
    """Scheduler backed by daemon threads."""

    def call_later(self, delay_sec: float, callback: Callable[[], None]) -> TimerHandle:
        return _OneShotTimer(delay_sec, callback).start()

    def call_every(self, interval_sec: float, callback: Callable[[], None]) -> TimerHandle:
        return _RepeatingTimer(interval_sec, callback).start()
