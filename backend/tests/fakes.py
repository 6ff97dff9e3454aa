"""
Deterministic collaborators for tests: a manual clock and a scheduler that
only fires timers when told to advance time.
"""

from typing import Callable, Dict, List, Optional

from experiment_core.infra.scheduler import Scheduler, TimerHandle, run_guarded

# 2026-01-01T00:00:00Z
START_MS = 1_767_225_600_000


class ManualClock:
    """Clock whose time only moves through advance()/set_ms()"""

    def __init__(self, start_ms: int = START_MS):
        self._ms = start_ms

    def now(self) -> float:
        return self._ms / 1000

    def now_ms(self) -> int:
        return self._ms

    def advance(self, seconds: float):
        self._ms += int(round(seconds * 1000))

    def set_ms(self, value: int):
        self._ms = value


class ManualScheduler(Scheduler):
    """
    Scheduler driven by a ManualClock.

    advance(seconds) moves the clock forward and runs every timer that falls
    due on the way, in due order, re-arming recurring ones.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._timers: Dict[int, list] = {}   # id -> [handle, due_ms, callback]

    def _register(self, interval: float, callback: Callable[[], None], name: str, recurring: bool) -> TimerHandle:
        handle = TimerHandle(name or getattr(callback, '__name__', 'timer'), interval, recurring)
        due = self.clock.now_ms() + int(round(interval * 1000))
        self._timers[handle.id] = [handle, due, callback]
        return handle

    def call_every(self, interval, callback, name=""):
        return self._register(interval, callback, name, recurring=True)

    def call_later(self, delay, callback, name=""):
        return self._register(delay, callback, name, recurring=False)

    def cancel(self, handle: Optional[TimerHandle]):
        if handle is None:
            return
        handle.cancelled = True
        self._timers.pop(handle.id, None)

    def cancel_all(self):
        for handle, _, _ in self._timers.values():
            handle.cancelled = True
        self._timers.clear()

    def pending(self) -> List[str]:
        return sorted(handle.name for handle, _, _ in self._timers.values())

    def advance(self, seconds: float):
        target = self.clock.now_ms() + int(round(seconds * 1000))

        while True:
            due_timers = [t for t in self._timers.values() if t[1] <= target]
            if not due_timers:
                break

            entry = min(due_timers, key=lambda t: (t[1], t[0].id))
            handle, due, callback = entry
            self.clock.set_ms(due)

            if handle.recurring:
                entry[1] = due + int(round(handle.interval * 1000))
            else:
                self._timers.pop(handle.id, None)

            run_guarded(handle, callback)

        self.clock.set_ms(target)
