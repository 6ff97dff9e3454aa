"""
Scheduler - recurring and delayed task registration

The core needs three kinds of timers:
- Idle/timeout check (recurring, 30 s, always while initialized)
- Periodic backup (recurring, 120 s, only while a session runs)
- Debounced backup (single delayed call, re-armed on every trigger)

AsyncioScheduler runs callbacks on the host's asyncio event loop
(loop.call_later), so every reaction executes on the single loop thread
and no locking is needed. Tests use tests/fakes.py ManualScheduler.
"""

import asyncio
import itertools
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    """Opaque handle returned by call_every/call_later"""

    _ids = itertools.count(1)

    def __init__(self, name: str, interval: float, recurring: bool):
        self.id = next(self._ids)
        self.name = name
        self.interval = interval
        self.recurring = recurring
        self.cancelled = False

    def __repr__(self):
        kind = "every" if self.recurring else "later"
        return f"<TimerHandle #{self.id} {self.name} {kind} {self.interval}s>"


class Scheduler:
    """Interface for timer registration"""

    def call_every(self, interval: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        raise NotImplementedError

    def cancel(self, handle: Optional[TimerHandle]):
        raise NotImplementedError

    def cancel_all(self):
        raise NotImplementedError


def run_guarded(handle: TimerHandle, callback: Callable[[], None]):
    """Run a timer callback; failures are logged, never propagated to the loop"""
    try:
        callback()
    except Exception as e:
        logger.error(f"Timer '{handle.name}' failed: {e}", exc_info=True)


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by an asyncio event loop.

    Recurring timers re-arm themselves after each run. The loop defaults to
    the running loop at first use (call from inside the FastAPI lifespan).
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._pending: Dict[int, asyncio.TimerHandle] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_every(self, interval: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        handle = TimerHandle(name or getattr(callback, '__name__', 'timer'), interval, recurring=True)

        def tick():
            if handle.cancelled:
                return
            run_guarded(handle, callback)
            if not handle.cancelled:
                self._pending[handle.id] = self.loop.call_later(interval, tick)

        self._pending[handle.id] = self.loop.call_later(interval, tick)
        logger.debug(f"Registered {handle}")
        return handle

    def call_later(self, delay: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        handle = TimerHandle(name or getattr(callback, '__name__', 'timer'), delay, recurring=False)

        def fire():
            self._pending.pop(handle.id, None)
            if not handle.cancelled:
                run_guarded(handle, callback)

        self._pending[handle.id] = self.loop.call_later(delay, fire)
        return handle

    def cancel(self, handle: Optional[TimerHandle]):
        if handle is None:
            return
        handle.cancelled = True
        pending = self._pending.pop(handle.id, None)
        if pending is not None:
            pending.cancel()

    def cancel_all(self):
        for pending in self._pending.values():
            pending.cancel()
        count = len(self._pending)
        self._pending.clear()
        logger.info(f"Cancelled {count} pending timer(s)")
