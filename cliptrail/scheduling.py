from __future__ import annotations

import logging
import threading
from typing import Callable

log = logging.getLogger(__name__)


class Debouncer:
    """Trailing-edge debounce: ``fn`` runs once, ``delay_s`` after the last ``trigger()``."""

    def __init__(self, delay_s: float, fn: Callable[[], None], name: str = "Debouncer") -> None:
        self._delay_s = delay_s
        self._fn = fn
        self._name = name
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self._delay_s, self._fire, args=(self._generation,))
            timer.daemon = True
            timer.name = self._name
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1

    def flush(self) -> None:
        """Run a pending call now, on the calling thread."""
        with self._lock:
            if self._timer is None:
                return
            self._timer.cancel()
            self._timer = None
            self._generation += 1
        self._fn()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
        try:
            self._fn()
        except Exception:
            log.exception("%s 回调异常", self._name)


class PollTimer:
    """Repeating trigger with at most one armed timer at any time."""

    def __init__(self, interval_ms: int, fn: Callable[[], object], name: str = "PollTimer") -> None:
        self._interval_ms = interval_ms
        self._fn = fn
        self._name = name
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._running = False

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm_locked()

    def reschedule(self, interval_ms: int) -> None:
        with self._lock:
            self._interval_ms = interval_ms
            if not self._running:
                return
            self._cancel_locked()
            self._arm_locked()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1

    def _arm_locked(self) -> None:
        timer = threading.Timer(self._interval_ms / 1000.0, self._tick, args=(self._generation,))
        timer.daemon = True
        timer.name = self._name
        self._timer = timer
        timer.start()

    def _tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._running:
                return
            self._timer = None
        try:
            self._fn()
        except Exception:
            log.exception("%s 回调异常", self._name)
        with self._lock:
            if generation == self._generation and self._running and self._timer is None:
                self._arm_locked()
