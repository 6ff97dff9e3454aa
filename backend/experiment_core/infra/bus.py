"""
Event Bus - synchronous publish/subscribe between the core components

Dispatch model:
- publish() is synchronous from the caller's point of view
- Events published while a handler is running are queued and dispatched
  after the current event's handlers finish, in publication order
- A failing handler is logged and does not stop the remaining handlers

Usage:
    bus = EventBus()
    bus.subscribe(Topic.SESSION_STARTED, tracker.on_session_start)
    bus.publish(Topic.SESSION_STARTED, {'session_id': 1, 'speed_config': {...}})
"""

import logging
from collections import defaultdict, deque
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Topic(Enum):
    """Bus topics consumed and produced by the core"""
    # Consumed (published by the host application)
    SESSION_STARTED = "session-started"
    SESSION_ENDED = "session-ended"
    PAGE_SUSPEND = "page-suspend"
    VISIBILITY_CHANGED = "visibility-changed"
    ACTIVITY = "activity"
    SIGNIFICANT_EVENT = "significant-event"

    # Produced by the core
    IDLE = "idle"
    TIMEOUT = "timeout"
    FORCE_END_SESSION = "force-end-session"


Handler = Callable[[Dict], None]


class EventBus:
    """
    Explicit, injectable publish/subscribe channel.

    Owned by the composition root; handlers receive the payload dict.
    A '*' subscription (subscribe_all) receives (topic, payload).
    """

    def __init__(self):
        self._handlers: Dict[Topic, List[Handler]] = defaultdict(list)
        self._wildcard: List[Callable[[Topic, Dict], None]] = []
        self._queue: Deque[Tuple[Topic, Dict]] = deque()
        self._dispatching = False

    def subscribe(self, topic: Topic, handler: Handler):
        self._handlers[topic].append(handler)

    def subscribe_all(self, handler: Callable[[Topic, Dict], None]):
        """Receive every published event (used by the WebSocket bridge)"""
        self._wildcard.append(handler)

    def unsubscribe(self, topic: Topic, handler: Handler) -> bool:
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def clear(self):
        self._handlers.clear()
        self._wildcard.clear()
        self._queue.clear()

    def publish(self, topic: Topic, payload: Optional[Dict] = None):
        """
        Publish an event.

        If called from inside a handler, the event is queued and delivered
        once the in-flight event has been fully dispatched.
        """
        self._queue.append((topic, dict(payload or {})))

        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._queue:
                current_topic, current_payload = self._queue.popleft()
                self._dispatch(current_topic, current_payload)
        finally:
            self._dispatching = False

    def _dispatch(self, topic: Topic, payload: Dict):
        logger.debug(f"Dispatching {topic.value}: {payload}")

        for handler in list(self._handlers.get(topic, [])):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Handler error on '{topic.value}': {e}", exc_info=True)

        for handler in list(self._wildcard):
            try:
                handler(topic, payload)
            except Exception as e:
                logger.error(f"Wildcard handler error on '{topic.value}': {e}", exc_info=True)

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._handlers.get(topic, []))
