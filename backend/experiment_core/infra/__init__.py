"""
Infrastructure - clock, event bus, scheduler and durable store collaborators
"""
from .bus import EventBus, Topic
from .clock import SystemClock
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle
from .store import DurableStore, InMemoryStore, JsonFileStore, StoreError, StoreFullError, entry_size

__all__ = [
    'EventBus', 'Topic', 'SystemClock', 'AsyncioScheduler', 'Scheduler', 'TimerHandle',
    'DurableStore', 'InMemoryStore', 'JsonFileStore', 'StoreError', 'StoreFullError', 'entry_size',
]
