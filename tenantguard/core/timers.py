from __future__ import annotations

import threading
from typing import Callable, List, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """
    threading.Timer-backed scheduler.

    Callbacks run on daemon timer threads; the caller is responsible for serializing
    state mutation (SessionLifecycleController holds one lock per mutation).
    Cancellation is best-effort: a timer that already started firing still runs, so
    callbacks must re-check their own guards.
    """

    def __init__(self, *, name: str = "tenantguard-timer"):
        self.name = name
        self._lock = threading.Lock()
        self._timers: List[threading.Timer] = []

    def call_later(self, delay: float, fn: Callable[[], None]) -> threading.Timer:
        t = threading.Timer(max(0.0, float(delay)), fn)
        t.daemon = True
        t.name = self.name
        with self._lock:
            self._timers = [x for x in self._timers if x.is_alive()]
            self._timers.append(t)
        t.start()
        return t

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers = []
        for t in timers:
            t.cancel()
