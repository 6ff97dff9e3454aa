"""
Experiment State - shared context and host-side session bookkeeping

ExperimentState is the single mutable context object passed by reference
to the tracker, the validation engine and the backup engine. It holds:
- user_id: participant id
- session_order: permutation ids in presentation order (9 entries)
- metrics: completed per-session metric records (append-only)
- current_session: metric record of the running session, or None

ExperimentManager is the host model that creates and finalizes those
records, validates in-session events and persists user data through the
durable store.

Session metric record (dict, JSON-serializable):
    {
        'user_id': 'alice',
        'session_id': 3,                  # 1-based
        'permutation_id': 7,
        'speed_config': {'id': 7, 'pacman': 'fast', 'ghost': 'normal'},
        'timestamp': '2026-01-01T10:00:00+00:00',
        'start_time': 1767261600000,      # ms
        'events': [{'type': 'ghostEaten', 'time': 1520, 'timestamp': ..., 'ghostId': 'blinky'}],
        'summary': {'total_ghosts_eaten': 1, ...},
        'resumed': False
    }
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from ..config import TOTAL_SESSIONS
from ..infra.clock import SystemClock
from ..infra.store import DurableStore, StoreError
from .permutations import PERMUTATIONS, speed_multipliers

logger = logging.getLogger(__name__)

RESUME_MAX_AGE_MS = 60 * 60 * 1000  # 1 hour

VALID_EVENT_TYPES = ('ghostEaten', 'pelletEaten', 'death', 'turnComplete')
PELLET_TYPES = ('pacdot', 'powerPellet', 'fruit')

# Event type -> summary counter it increments
SUMMARY_COUNTERS = {
    'ghostEaten': 'total_ghosts_eaten',
    'pelletEaten': 'total_pellets_eaten',
    'death': 'total_deaths',
    'turnComplete': 'total_turns',
}


def user_data_key(user_id: str) -> str:
    return f"experiment_{user_id}"


def current_session_key(user_id: str) -> str:
    return f"current_session_{user_id}"


def empty_summary() -> Dict:
    return {
        'total_ghosts_eaten': 0,
        'total_pellets_eaten': 0,
        'total_deaths': 0,
        'successful_turns': 0,
        'total_turns': 0,
        'game_time': 0,
    }


@dataclass
class ExperimentState:
    """Shared experiment context (mutated in place by every component)"""
    user_id: Optional[str] = None
    session_order: List[int] = field(default_factory=list)
    metrics: List[Dict] = field(default_factory=list)
    current_session: Optional[Dict] = None
    is_experiment_active: bool = False

    def completed_sessions_count(self) -> int:
        return len(self.metrics)

    def remaining_sessions_count(self) -> int:
        return TOTAL_SESSIONS - self.completed_sessions_count()

    def recent_events(self, count: int) -> List[Dict]:
        """Last `count` events of the running session"""
        if not self.current_session or not self.current_session.get('events'):
            return []
        return list(self.current_session['events'][-count:])

    def current_session_info(self) -> Optional[Dict]:
        if not self.current_session:
            return None

        return {
            'session_id': self.current_session.get('session_id'),
            'completed_sessions': self.completed_sessions_count(),
            'total_sessions': TOTAL_SESSIONS,
            'speed_config': self.current_session.get('speed_config'),
        }


class ExperimentManager:
    """
    Host-side experiment bookkeeping over a shared ExperimentState.

    Args:
        state: Shared ExperimentState instance
        store: Durable store for user data and the resumable current session
        order_factory: user_id -> session order (the tracker's assign_order)
        clock: Time source
    """

    def __init__(
        self,
        state: ExperimentState,
        store: DurableStore,
        order_factory: Callable[[str], List[int]],
        clock=None
    ):
        self.state = state
        self.store = store
        self.order_factory = order_factory
        self.clock = clock or SystemClock()

        # Gameplay timer (ms)
        self.game_start_time: Optional[int] = None
        self.gameplay_started = False
        self.gameplay_paused_time = 0
        self.last_pause_start: Optional[int] = None

    # ------------------------------------------------------------------
    # Participant
    # ------------------------------------------------------------------

    def initialize_user(self, user_id: str) -> List[int]:
        """
        Set the participant, load their data and assign a session order.

        Returns:
            The participant's session order

        Raises:
            ValueError: if user_id is blank
        """
        if not user_id or not user_id.strip():
            raise ValueError("User ID is required")

        self.state.user_id = user_id.strip()
        self.state.session_order = []
        self.state.metrics = []
        self.state.current_session = None
        self.state.is_experiment_active = False
        self.load_user_data()

        if not self.state.session_order:
            self.state.session_order = list(self.order_factory(self.state.user_id))
            self.save_user_data()

        logger.info(
            f"✓ Participant initialized: {self.state.user_id} | "
            f"Order: {self.state.session_order} | "
            f"Completed: {self.state.completed_sessions_count()}"
        )
        return self.state.session_order

    def validate_user_data(self, user_data) -> bool:
        if not isinstance(user_data, dict):
            return False

        if user_data.get('user_id') != self.state.user_id:
            logger.warning("User ID mismatch in stored data")
            return False

        order = user_data.get('session_order')
        if not isinstance(order, list) or len(order) > TOTAL_SESSIONS:
            logger.warning("Invalid session order in stored data")
            return False

        metrics = user_data.get('metrics')
        if not isinstance(metrics, list) or len(metrics) > TOTAL_SESSIONS:
            logger.warning("Invalid metrics array in stored data")
            return False

        return True

    def load_user_data(self) -> bool:
        if not self.state.user_id:
            logger.warning("Cannot load user data - no user ID")
            return False

        try:
            stored = self.store.get(user_data_key(self.state.user_id))
            if stored is None:
                return True

            user_data = json.loads(stored)
            if not self.validate_user_data(user_data):
                logger.warning("Invalid user data format, resetting")
                self.reset_user_data()
                return False

            self.state.session_order = user_data.get('session_order') or []
            self.state.metrics = user_data.get('metrics') or []
            return True

        except (StoreError, ValueError) as e:
            logger.error(f"Error loading user data: {e}", exc_info=True)
            self.reset_user_data()
            return False

    def save_user_data(self) -> bool:
        if not self.state.user_id:
            logger.warning("Cannot save user data - no user ID")
            return False

        user_data = {
            'user_id': self.state.user_id,
            'session_order': self.state.session_order,
            'metrics': self.state.metrics,
            'last_updated': self.clock.now_ms(),
            'version': '1.0',
        }

        try:
            self.store.set(user_data_key(self.state.user_id), json.dumps(user_data))
            return True
        except (StoreError, TypeError, ValueError) as e:
            logger.error(f"Error saving user data: {e}", exc_info=True)
            return False

    def reset_user_data(self):
        """Discard the participant's order, metrics and saved session"""
        self.state.session_order = []
        self.state.metrics = []
        self.state.current_session = None
        self.state.is_experiment_active = False

        if self.state.user_id:
            try:
                self.store.remove(user_data_key(self.state.user_id))
                self.store.remove(current_session_key(self.state.user_id))
            except StoreError as e:
                logger.error(f"Error clearing user data: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Current session persistence
    # ------------------------------------------------------------------

    def save_current_session(self) -> bool:
        if not self.state.current_session or not self.state.user_id:
            return False

        record = dict(self.state.current_session)
        record['last_saved'] = self.clock.now_ms()

        try:
            self.store.set(current_session_key(self.state.user_id), json.dumps(record))
            return True
        except (StoreError, TypeError, ValueError) as e:
            logger.error(f"Error saving current session: {e}", exc_info=True)
            return False

    def load_current_session(self) -> Optional[Dict]:
        if not self.state.user_id:
            return None

        try:
            stored = self.store.get(current_session_key(self.state.user_id))
            return json.loads(stored) if stored else None
        except (StoreError, ValueError) as e:
            logger.error(f"Error loading current session: {e}", exc_info=True)
            return None

    def clear_current_session(self):
        if self.state.user_id:
            try:
                self.store.remove(current_session_key(self.state.user_id))
            except StoreError as e:
                logger.error(f"Error clearing current session: {e}", exc_info=True)
        self.state.current_session = None

    def can_resume_session(self, saved: Dict) -> bool:
        saved_at = saved.get('last_saved') or saved.get('start_time') or 0
        age = self.clock.now_ms() - saved_at

        session_id = saved.get('session_id') or 0
        return (
            age < RESUME_MAX_AGE_MS and
            saved.get('user_id') == self.state.user_id and
            0 < session_id <= TOTAL_SESSIONS
        )

    # ------------------------------------------------------------------
    # Session lifecycle (host side)
    # ------------------------------------------------------------------

    def start_session(self) -> Dict:
        """
        Create (or resume) the current session record.

        Returns:
            The current session metric record

        Raises:
            RuntimeError: if no user is set or all sessions are complete
        """
        if not self.state.user_id:
            raise RuntimeError("User ID must be set before starting session")

        saved = self.load_current_session()
        if saved and self.can_resume_session(saved):
            return self.resume_session(saved)

        completed = self.state.completed_sessions_count()
        if completed >= TOTAL_SESSIONS:
            raise RuntimeError("All sessions completed")

        permutation_id = self.state.session_order[completed]
        config = PERMUTATIONS[permutation_id]
        now_ms = self.clock.now_ms()

        self.state.current_session = {
            'user_id': self.state.user_id,
            'session_id': completed + 1,
            'permutation_id': permutation_id,
            'speed_config': dict(config),
            'timestamp': datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).isoformat(),
            'events': [],
            'summary': empty_summary(),
            'resumed': False,
            'start_time': now_ms,
        }
        self._reset_gameplay_timer()
        self.state.is_experiment_active = True
        self.save_current_session()

        multipliers = speed_multipliers(config)
        logger.info(
            f"✓ Session {completed + 1} created | Permutation {permutation_id} "
            f"(pacman x{multipliers['pacman']}, ghost x{multipliers['ghost']})"
        )
        return self.state.current_session

    def resume_session(self, saved: Dict) -> Dict:
        logger.info(f"Resuming previous session: {saved.get('session_id')}")

        session = dict(saved)
        session.pop('last_saved', None)
        session['resumed'] = True
        session['resume_time'] = self.clock.now_ms()

        self.state.current_session = session
        self.game_start_time = saved.get('start_time') or self.clock.now_ms()
        self.state.is_experiment_active = True
        self.save_current_session()
        return session

    def end_session(self) -> Optional[Dict]:
        """Finalize the current session into metrics; returns the record"""
        if not self.state.is_experiment_active or not self.state.current_session:
            return None

        if self.last_pause_start is not None:
            self.resume_gameplay_timer()

        session = self.state.current_session
        session['summary']['game_time'] = self.gameplay_time()
        self.state.metrics.append(session)

        self.save_user_data()
        self.clear_current_session()
        self.state.is_experiment_active = False
        self._reset_gameplay_timer()

        logger.info(
            f"✓ Session {session.get('session_id')} finalized | "
            f"Events: {len(session.get('events', []))} | "
            f"Completed: {self.state.completed_sessions_count()}/{TOTAL_SESSIONS}"
        )
        return session

    # ------------------------------------------------------------------
    # Event logging
    # ------------------------------------------------------------------

    def validate_event_data(self, event_type: str, data) -> bool:
        if event_type not in VALID_EVENT_TYPES:
            logger.warning(f"Unknown event type: {event_type}")
            return False

        if not isinstance(data, dict):
            logger.warning("Event data must be an object")
            return False

        if event_type == 'ghostEaten':
            if not isinstance(data.get('ghostId'), str) or not data['ghostId']:
                logger.warning("ghostEaten event requires valid ghostId")
                return False
        elif event_type == 'pelletEaten':
            if data.get('type') not in PELLET_TYPES:
                logger.warning("pelletEaten event requires valid type")
                return False
        elif event_type == 'death':
            if not isinstance(data.get('cause'), str) or not data['cause']:
                logger.warning("death event requires valid cause")
                return False
        elif event_type == 'turnComplete':
            if not isinstance(data.get('success'), bool):
                logger.warning("turnComplete event requires boolean success")
                return False

        return True

    def log_event(self, event_type: str, data: Optional[Dict] = None) -> bool:
        """Append a validated gameplay event to the current session"""
        data = {} if data is None else data

        if not self.state.is_experiment_active or not self.state.current_session:
            logger.warning("Cannot log event - experiment not active")
            return False

        if not self.validate_event_data(event_type, data):
            logger.error(f"Invalid event data: type={event_type} data={data}")
            return False

        now_ms = self.clock.now_ms()
        reference = self.game_start_time or self.state.current_session.get('start_time') or now_ms
        event = {
            'time': now_ms - reference,
            'timestamp': now_ms,
            **data,
            'type': event_type,
        }
        # pelletEaten carries its own 'type' field (pellet kind)
        if event_type == 'pelletEaten':
            event['pellet_type'] = data.get('type')

        self.state.current_session['events'].append(event)
        self._update_summary(event_type, data)
        self.save_current_session()
        return True

    def _update_summary(self, event_type: str, data: Dict):
        summary = self.state.current_session['summary']
        counter = SUMMARY_COUNTERS.get(event_type)
        if counter:
            summary[counter] = summary.get(counter, 0) + 1
        if event_type == 'turnComplete' and data.get('success'):
            summary['successful_turns'] = summary.get('successful_turns', 0) + 1

    # ------------------------------------------------------------------
    # Gameplay timer
    # ------------------------------------------------------------------

    def _reset_gameplay_timer(self):
        self.game_start_time = None
        self.gameplay_started = False
        self.gameplay_paused_time = 0
        self.last_pause_start = None

    def start_gameplay_timer(self):
        if not self.state.is_experiment_active or self.gameplay_started:
            return
        self.game_start_time = self.clock.now_ms()
        self.gameplay_started = True
        self.gameplay_paused_time = 0
        self.last_pause_start = None

    def pause_gameplay_timer(self):
        if not self.gameplay_started or self.last_pause_start is not None:
            return
        self.last_pause_start = self.clock.now_ms()

    def resume_gameplay_timer(self):
        if not self.gameplay_started or self.last_pause_start is None:
            return
        self.gameplay_paused_time += self.clock.now_ms() - self.last_pause_start
        self.last_pause_start = None

    def gameplay_time(self) -> int:
        """Elapsed gameplay in ms, excluding pauses"""
        if not self.game_start_time:
            return 0

        now_ms = self.clock.now_ms()
        total = now_ms - self.game_start_time - self.gameplay_paused_time
        if self.last_pause_start is not None:
            total -= now_ms - self.last_pause_start
        return max(0, total)

    def snapshot(self) -> Dict:
        """Deep copy of the shared state, for exports"""
        return {
            'user_id': self.state.user_id,
            'session_order': list(self.state.session_order),
            'metrics': copy.deepcopy(self.state.metrics),
            'current_session': copy.deepcopy(self.state.current_session),
            'completed_sessions': self.state.completed_sessions_count(),
        }
