"""
Session Lifecycle Tracker - session start/end, activity and timeout monitoring

This module tracks the lifecycle of experimental sessions:
- Session start/end detection (driven by bus events from the host)
- Activity tracking, idle detection and maximum-duration timeout
- Milestones (timestamped lifecycle markers) on the active session record
- Resumable session state and append-only session history in the store
- Deterministic per-participant session ordering

Milestone Types:
1. session_started: session record created
2. session_ended: session finalized into history
3. page_unload: page suspended while a session is active (still resumable)
4. tab_hidden / tab_visible: visibility changes
5. idle_detected: no activity for longer than the idle threshold
6. session_timeout: session exceeded its maximum duration

Store Keys:
- session_state_<userId>    resumable snapshot of the active record
- session_history_<userId>  {userId, sessions: [...], lastUpdated}

Usage:
    tracker = SessionLifecycleTracker(state, bus, store, scheduler)
    tracker.initialize()

    order = tracker.assign_order('alice')      # [4, 0, 7, ...]
    bus.publish(Topic.SESSION_STARTED, {'session_id': 1, 'speed_config': {...}})
    bus.publish(Topic.ACTIVITY)
    bus.publish(Topic.SESSION_ENDED)

    analytics = tracker.analytics()
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from ..config import TOTAL_SESSIONS, TrackerConfig
from ..experiment.state import ExperimentState
from ..infra.bus import EventBus, Topic
from ..infra.clock import SystemClock
from ..infra.scheduler import Scheduler, TimerHandle
from ..infra.store import DurableStore, StoreError
from .randomization import assign_order, distribution_summary

logger = logging.getLogger(__name__)


class MilestoneType(Enum):
    """Lifecycle markers recorded on the active session"""
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    PAGE_UNLOAD = "page_unload"
    TAB_HIDDEN = "tab_hidden"
    TAB_VISIBLE = "tab_visible"
    IDLE_DETECTED = "idle_detected"
    SESSION_TIMEOUT = "session_timeout"


@dataclass
class Milestone:
    """
    Single timestamped lifecycle marker.

    Extra fields are flattened into the dict form.
    """
    type: str
    timestamp: int      # ms
    session_time: int   # ms since session start
    extra: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'timestamp': self.timestamp,
            'session_time': self.session_time,
            **self.extra,
        }


@dataclass
class SessionRecord:
    """
    Tracker-side record of one session.

    Created on session start, appended to while running, finalized on end.
    """
    session_id: Optional[int]
    speed_config: Optional[Dict]
    start_time: int
    events: List[Dict] = field(default_factory=list)
    milestones: List[Dict] = field(default_factory=list)
    device_info: Dict = field(default_factory=dict)
    browser_info: Dict = field(default_factory=dict)
    end_time: Optional[int] = None
    duration: Optional[int] = None
    completed: bool = False
    info: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionRecord':
        known = {name for name in cls.__dataclass_fields__}
        record = cls(
            session_id=data.get('session_id'),
            speed_config=data.get('speed_config'),
            start_time=data.get('start_time') or 0,
        )
        for key, value in data.items():
            if key in known and key not in ('session_id', 'speed_config', 'start_time'):
                setattr(record, key, value)
        return record


def session_state_key(user_id: str) -> str:
    return f"session_state_{user_id}"


def session_history_key(user_id: str) -> str:
    return f"session_history_{user_id}"


class SessionLifecycleTracker:
    """
    Tracks session lifecycle, activity and timing for one participant.

    Coordinates:
    - Bus subscriptions for host lifecycle events
    - Recurring idle/timeout check
    - Session record persistence and history
    """

    def __init__(
        self,
        state: ExperimentState,
        bus: EventBus,
        store: DurableStore,
        scheduler: Scheduler,
        clock=None,
        config: Optional[TrackerConfig] = None,
        total_variants: int = TOTAL_SESSIONS
    ):
        """
        Initialize tracker.

        Args:
            state: Shared ExperimentState (read for user id and current session)
            bus: Event bus (consumes lifecycle events, produces idle/timeout)
            store: Durable store for session state and history
            scheduler: Timer registration for the idle/timeout check
            clock: Time source (defaults to SystemClock)
            config: Timing thresholds
            total_variants: Number of configured session variants
        """
        self.state = state
        self.bus = bus
        self.store = store
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.config = config or TrackerConfig()
        self.total_variants = total_variants

        # Active session
        self.current_session: Optional[SessionRecord] = None
        self.session_start_time: Optional[int] = None   # ms
        self.last_activity_time: Optional[int] = None   # ms

        # Append-only history of finalized records (dicts)
        self.session_history: List[Dict] = []

        self._check_timer: Optional[TimerHandle] = None
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Setup / teardown
    # ------------------------------------------------------------------

    def initialize(self):
        if self.is_initialized:
            return

        self.bus.subscribe(Topic.SESSION_STARTED, self.on_session_start)
        self.bus.subscribe(Topic.SESSION_ENDED, self.on_session_end)
        self.bus.subscribe(Topic.PAGE_SUSPEND, self.on_page_suspend)
        self.bus.subscribe(Topic.VISIBILITY_CHANGED, self.on_visibility_change)
        self.bus.subscribe(Topic.ACTIVITY, self.on_activity)

        self._check_timer = self.scheduler.call_every(
            self.config.check_interval, self.check_idle_status, name='idle-check'
        )
        self.load_session_history()
        self.is_initialized = True

        logger.info(
            f"SessionLifecycleTracker initialized (idle {self.config.idle_threshold:.0f}s, "
            f"max {self.config.max_session_duration:.0f}s)"
        )

    def shutdown(self):
        self.scheduler.cancel(self._check_timer)
        self._check_timer = None
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Randomization
    # ------------------------------------------------------------------

    def assign_order(self, user_id: str) -> List[int]:
        """Deterministic session order for a participant (no I/O)"""
        order = assign_order(user_id, self.total_variants)
        logger.debug(f"Session order for {user_id}: {order} | distribution {distribution_summary(order)}")
        return order

    # ------------------------------------------------------------------
    # Lifecycle handlers
    # ------------------------------------------------------------------

    def on_session_start(self, info: Optional[Dict] = None):
        """Create the session record and mark it started"""
        info = dict(info or {})
        now = self.clock.now_ms()
        resumed = bool(info.pop('resumed', False))

        events = info.pop('events', None)
        if events is None and self.state.current_session is not None:
            # Share the host's event list so counts stay in sync
            events = self.state.current_session.setdefault('events', [])

        record = SessionRecord(
            session_id=info.pop('session_id', None),
            speed_config=info.pop('speed_config', None),
            start_time=now,
            events=events if events is not None else [],
            device_info=info.pop('device_info', None) or {},
            browser_info=info.pop('browser_info', None) or {},
            info=info,
        )

        if resumed:
            record = self._resume_record(record)

        self.current_session = record
        self.session_start_time = record.start_time
        self.update_last_activity()
        self.save_session_state()

        self.log_milestone(
            MilestoneType.SESSION_STARTED,
            session_id=record.session_id,
            speed_config=record.speed_config,
            resumed=resumed,
        )

        logger.info(f"✓ Session started: {record.session_id}{' (resumed)' if resumed else ''}")

    def _resume_record(self, fresh: SessionRecord) -> SessionRecord:
        """Continue the saved record of the same session, keeping its milestones and start"""
        saved = self.load_session_state()
        if not saved or saved.get('session_id') != fresh.session_id:
            return fresh

        record = SessionRecord.from_dict(saved)
        record.events = fresh.events
        if fresh.device_info:
            record.device_info = fresh.device_info
        if fresh.browser_info:
            record.browser_info = fresh.browser_info
        logger.info(f"Restored tracker state for session {record.session_id} ({len(record.milestones)} milestones)")
        return record

    def on_session_end(self, payload: Optional[Dict] = None):
        """Finalize the active record into history"""
        if self.current_session is None:
            return

        now = self.clock.now_ms()
        duration = now - self.session_start_time

        self.log_milestone(
            MilestoneType.SESSION_ENDED,
            duration=duration,
            total_events=len(self.current_session.events),
        )

        record = self.current_session
        record.end_time = now
        record.duration = duration
        record.completed = True
        self.session_history.append(record.to_dict())

        self.save_session_history()
        self.clear_session_state()
        self.current_session = None
        self.session_start_time = None

        logger.info(f"✓ Session ended: {record.session_id} | Duration: {duration / 1000:.1f}s")

    def on_page_suspend(self, payload: Optional[Dict] = None):
        """Persist the active record without finalizing it"""
        if self.current_session is None:
            return

        self.log_milestone(
            MilestoneType.PAGE_UNLOAD,
            duration=self.clock.now_ms() - self.session_start_time,
            completed=False,
        )
        self.save_session_state()
        logger.info("Page suspend detected, session state saved")

    def on_visibility_change(self, payload: Optional[Dict] = None):
        hidden = bool((payload or {}).get('hidden'))
        now = self.clock.now_ms()

        if hidden:
            self.log_milestone(MilestoneType.TAB_HIDDEN, timestamp=now)
        else:
            self.log_milestone(MilestoneType.TAB_VISIBLE, timestamp=now)
            self.update_last_activity()

    def on_activity(self, payload: Optional[Dict] = None):
        self.update_last_activity()

    def update_last_activity(self):
        self.last_activity_time = self.clock.now_ms()

    # ------------------------------------------------------------------
    # Idle / timeout monitoring
    # ------------------------------------------------------------------

    def check_idle_status(self):
        """
        Compare now against last activity and session start.

        Called every check_interval seconds. Idle is re-emitted on every
        check while the condition holds.
        """
        if self.current_session is None or self.last_activity_time is None:
            return

        now = self.clock.now_ms()
        idle_time = now - self.last_activity_time
        session_time = now - self.session_start_time

        if idle_time > self.config.idle_threshold * 1000:
            self.log_milestone(MilestoneType.IDLE_DETECTED, idle_time=idle_time, session_time=session_time)
            logger.info(f"Idle session detected ({idle_time / 1000:.0f}s)")
            self.bus.publish(Topic.IDLE, {'idle_time_ms': idle_time})

        if session_time > self.config.max_session_duration * 1000:
            self.log_milestone(MilestoneType.SESSION_TIMEOUT, session_time=session_time)
            logger.warning(f"Session timeout detected ({session_time / 1000:.0f}s)")
            self.bus.publish(Topic.TIMEOUT, {'session_time_ms': session_time})

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def log_milestone(self, milestone_type: MilestoneType, **data):
        if self.current_session is None:
            return

        now = self.clock.now_ms()
        session_time = data.pop('session_time', now - (self.session_start_time or now))
        timestamp = data.pop('timestamp', now)

        milestone = Milestone(
            type=milestone_type.value,
            timestamp=timestamp,
            session_time=session_time,
            extra=data,
        )
        self.current_session.milestones.append(milestone.to_dict())
        self.save_session_state()

        logger.debug(f"Milestone: {milestone_type.value} {data}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_session_state(self) -> bool:
        if self.current_session is None or not self.state.user_id:
            return False

        state_data = self.current_session.to_dict()
        state_data['last_saved'] = self.clock.now_ms()

        try:
            self.store.set(session_state_key(self.state.user_id), json.dumps(state_data))
            return True
        except (StoreError, TypeError, ValueError) as e:
            logger.error(f"Error saving session state: {e}", exc_info=True)
            return False

    def load_session_state(self) -> Optional[Dict]:
        """
        Load the saved active-session snapshot.

        Returns:
            State dict, or None when absent or older than the resume window
        """
        if not self.state.user_id:
            return None

        try:
            stored = self.store.get(session_state_key(self.state.user_id))
            if not stored:
                return None

            state_data = json.loads(stored)
            age = self.clock.now_ms() - (state_data.get('last_saved') or 0)
            if age < self.config.resume_window * 1000:
                return state_data

            logger.info(f"Discarding stale session state ({age / 1000:.0f}s old)")
            return None

        except (StoreError, ValueError) as e:
            logger.error(f"Error loading session state: {e}", exc_info=True)
            return None

    def clear_session_state(self):
        if not self.state.user_id:
            return
        try:
            self.store.remove(session_state_key(self.state.user_id))
        except StoreError as e:
            logger.error(f"Error clearing session state: {e}", exc_info=True)

    def save_session_history(self) -> bool:
        if not self.state.user_id:
            return False

        history_data = {
            'userId': self.state.user_id,
            'sessions': self.session_history,
            'lastUpdated': self.clock.now_ms(),
        }

        try:
            self.store.set(session_history_key(self.state.user_id), json.dumps(history_data))
            return True
        except (StoreError, TypeError, ValueError) as e:
            logger.error(f"Error saving session history: {e}", exc_info=True)
            return False

    def load_session_history(self):
        """Load history for the current participant (empty when none)"""
        self.session_history = []
        if not self.state.user_id:
            return

        try:
            stored = self.store.get(session_history_key(self.state.user_id))
            if stored:
                self.session_history = json.loads(stored).get('sessions') or []
        except (StoreError, ValueError, AttributeError) as e:
            logger.error(f"Error loading session history: {e}", exc_info=True)
            self.session_history = []

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def analytics(self) -> Dict:
        """
        Summarize session history.

        Average duration is over completed sessions only (0 if none).
        """
        completed = [s for s in self.session_history if s.get('completed')]
        incomplete = [s for s in self.session_history if not s.get('completed')]

        durations = [s.get('duration') or 0 for s in completed]
        average_duration = float(np.mean(durations)) if durations else 0.0
        total_events = sum(len(s.get('events') or []) for s in completed)

        return {
            'total_sessions': len(self.session_history),
            'completed_sessions': len(completed),
            'incomplete_sessions': len(incomplete),
            'average_duration': average_duration,
            'total_events': total_events,
            'session_history': [
                {
                    'session_id': s.get('session_id'),
                    'speed_config': s.get('speed_config'),
                    'duration': s.get('duration'),
                    'completed': bool(s.get('completed')),
                    'events': len(s.get('events') or []),
                    'milestones': len(s.get('milestones') or []),
                }
                for s in self.session_history
            ],
        }

    def export_session_data(self) -> Dict:
        return {
            'user_id': self.state.user_id,
            'export_timestamp': self.clock.now_ms(),
            'analytics': self.analytics(),
            'full_session_history': self.session_history,
            'current_session': self.current_session.to_dict() if self.current_session else None,
        }

    def debug_info(self) -> Dict:
        return {
            'is_initialized': self.is_initialized,
            'current_session_active': self.current_session is not None,
            'session_start_time': self.session_start_time,
            'last_activity_time': self.last_activity_time,
            'session_history': len(self.session_history),
            'idle_threshold': self.config.idle_threshold,
            'max_session_duration': self.config.max_session_duration,
        }
