"""
Experiment Coordinator - composition root for one participant's experiment

Wires the shared context and collaborators to the three core components:

    ExperimentState ──┬── ExperimentManager (host bookkeeping)
                      ├── SessionLifecycleTracker ─┐
                      ├── ValidationEngine ────────┼── EventBus
                      └── BackupRecoveryEngine ────┘
                                 │
                 Clock · Scheduler · DurableStore

Subscriptions are registered tracker -> validation -> backup, so for a
single bus event the tracker reacts first. The coordinator creates/clears
state.current_session immediately before publishing session-started /
session-ended, and ends the session when force-end-session is published.

Usage:
    coordinator = ExperimentCoordinator(store=JsonFileStore('./data/store.json'))
    coordinator.initialize()

    coordinator.initialize_user('alice')
    coordinator.start_session(device_info={...})
    coordinator.log_event('ghostEaten', {'ghostId': 'blinky'})
    coordinator.end_session()

    coordinator.shutdown()
"""

import logging
from typing import Dict, List, Optional

from .backup import BackupRecoveryEngine
from .config import ExperimentConfig
from .experiment import ExperimentManager, ExperimentState
from .experiment.state import VALID_EVENT_TYPES
from .export import metrics_to_csv, statistical_summary
from .infra import (
    AsyncioScheduler, DurableStore, EventBus, InMemoryStore, Scheduler, StoreError, SystemClock, Topic,
)
from .session import SessionLifecycleTracker
from .validation import ActionValidation, ProgressPhase, ValidationEngine

logger = logging.getLogger(__name__)

# Phase-specific names of the host actions
PHASE_ACTIONS = {
    ProgressPhase.BETWEEN_SESSIONS: {
        'start_session': 'start_next_session',
        'export_data': 'export_partial_data',
    },
}


class ExperimentCoordinator:
    """
    Owns the state, bus and components for the running experiment.

    Host operations raise ValueError (bad input) or RuntimeError (action not
    allowed in the current phase); component failures are logged and
    reported as False/None by the components themselves.
    """

    def __init__(
        self,
        config: Optional[ExperimentConfig] = None,
        store: Optional[DurableStore] = None,
        scheduler: Optional[Scheduler] = None,
        clock=None,
        bus: Optional[EventBus] = None
    ):
        self.config = config or ExperimentConfig()
        self.clock = clock if clock is not None else SystemClock()
        self.store = store if store is not None else InMemoryStore(capacity_bytes=self.config.backup.max_storage_bytes)
        self.scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self.bus = bus if bus is not None else EventBus()

        self.state = ExperimentState()

        self.tracker = SessionLifecycleTracker(
            self.state, self.bus, self.store, self.scheduler,
            clock=self.clock,
            config=self.config.tracker,
            total_variants=self.config.total_sessions,
        )
        self.manager = ExperimentManager(
            self.state, self.store, self.tracker.assign_order, clock=self.clock
        )
        self.validation = ValidationEngine(
            self.state, self.bus, self.tracker, self.store, clock=self.clock
        )
        self.backup = BackupRecoveryEngine(
            self.state, self.bus, self.store, self.scheduler, self.tracker, self.manager,
            clock=self.clock,
            config=self.config.backup,
        )

        self.is_initialized = False

    def initialize(self):
        if self.is_initialized:
            return

        self.tracker.initialize()
        self.validation.initialize()
        self.backup.initialize()
        self.bus.subscribe(Topic.FORCE_END_SESSION, self.on_force_end_session)

        self.is_initialized = True
        logger.info("✓ ExperimentCoordinator initialized")

    def shutdown(self):
        """Persist the running session and cancel all timers"""
        if self.state.is_experiment_active:
            self.manager.save_current_session()
            self.tracker.save_session_state()

        self.tracker.shutdown()
        self.backup.shutdown()
        self.scheduler.cancel_all()
        self.bus.clear()
        self.is_initialized = False
        logger.info("✓ ExperimentCoordinator shut down")

    # ------------------------------------------------------------------
    # Participant
    # ------------------------------------------------------------------

    def initialize_user(self, user_id: str) -> Dict:
        """
        Set the participant and bring every component up to their progress.

        Raises:
            ValueError: if user_id is blank
            RuntimeError: if a session is running
        """
        if self.state.is_experiment_active:
            raise RuntimeError("Cannot change participant during an active session")

        self.manager.initialize_user(user_id)
        self.tracker.load_session_history()
        self.validation.sync_phase()
        return self.status()

    def reset_experiment(self) -> Dict:
        """Discard the participant's data and assign a fresh order"""
        self._require('reset_experiment')

        user_id = self.state.user_id
        self.manager.reset_user_data()
        self.tracker.clear_session_state()
        self.tracker.session_history = []
        self.tracker.save_session_history()

        logger.info(f"Experiment reset for {user_id}")
        return self.initialize_user(user_id)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _require(self, action: str, context: Optional[Dict] = None) -> ActionValidation:
        if not self.state.user_id:
            raise RuntimeError("User ID not set")

        action = PHASE_ACTIONS.get(self.validation.phase, {}).get(action, action)
        validation = self.validation.validate_action(action, context)
        if not validation.allowed:
            reasons = '; '.join(validation.errors) or f"'{action}' not allowed in phase {self.validation.phase.value}"
            raise RuntimeError(reasons)

        for warning in validation.warnings:
            logger.warning(f"{action}: {warning}")
        return validation

    def start_session(self, device_info: Optional[Dict] = None, browser_info: Optional[Dict] = None) -> Dict:
        """
        Create (or resume) the next session and announce it on the bus.

        Returns:
            The current session metric record
        """
        self._require('start_session')

        session = self.manager.start_session()
        self.manager.start_gameplay_timer()

        self.bus.publish(Topic.SESSION_STARTED, {
            'session_id': session['session_id'],
            'speed_config': session['speed_config'],
            'resumed': session.get('resumed', False),
            'device_info': device_info or {},
            'browser_info': browser_info or {},
        })
        return session

    def end_session(self) -> Dict:
        """Finalize the running session; returns the completed record"""
        self._require('end_session')
        return self._finish_session()

    def _finish_session(self, reason: Optional[str] = None) -> Optional[Dict]:
        record = self.manager.end_session()
        if record is None:
            return None

        payload = {'session_id': record['session_id']}
        if reason:
            payload['reason'] = reason
        self.bus.publish(Topic.SESSION_ENDED, payload)
        return record

    def on_force_end_session(self, payload: Optional[Dict] = None):
        reason = (payload or {}).get('reason', 'unknown')
        if not self.state.is_experiment_active:
            return

        logger.warning(f"Ending session {self.state.current_session.get('session_id')} (forced: {reason})")
        self._finish_session(reason)

    # ------------------------------------------------------------------
    # In-session signals
    # ------------------------------------------------------------------

    def log_event(self, event_type: str, data: Optional[Dict] = None) -> bool:
        """Record a gameplay event; also counts as activity and may trigger a backup"""
        if not self.manager.log_event(event_type, data):
            return False

        self.bus.publish(Topic.ACTIVITY)
        self.bus.publish(Topic.SIGNIFICANT_EVENT, {'type': event_type})
        return True

    def signal_event(self, event_type: str) -> bool:
        """
        Announce a non-metric gameplay event (e.g. awardPoints).

        Metric event types must go through log_event().
        """
        if event_type in VALID_EVENT_TYPES:
            raise ValueError(f"'{event_type}' is a metric event, use log_event()")
        if not self.state.is_experiment_active:
            return False

        self.bus.publish(Topic.ACTIVITY)
        self.bus.publish(Topic.SIGNIFICANT_EVENT, {'type': event_type})
        return True

    def activity(self):
        self.bus.publish(Topic.ACTIVITY)

    def visibility_changed(self, hidden: bool):
        if hidden:
            self.manager.pause_gameplay_timer()
        else:
            self.manager.resume_gameplay_timer()
        self.bus.publish(Topic.VISIBILITY_CHANGED, {'hidden': hidden})

    def suspend(self):
        """Page is going away: persist what can be resumed"""
        self.manager.save_current_session()
        self.bus.publish(Topic.PAGE_SUSPEND)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self, selector: str = 'latest') -> Optional[Dict]:
        snapshot = self.backup.recover(selector)
        if snapshot is not None and not self.state.is_experiment_active:
            # a restored session is resumed by the next start_session()
            self.state.current_session = None
            self.validation.sync_phase()
        return snapshot

    # ------------------------------------------------------------------
    # Reporting / export
    # ------------------------------------------------------------------

    def status(self) -> Dict:
        return {
            'user_id': self.state.user_id,
            'phase': self.validation.phase.value,
            'is_active': self.state.is_experiment_active,
            'session_order': list(self.state.session_order),
            'completed_sessions': self.state.completed_sessions_count(),
            'remaining_sessions': self.state.remaining_sessions_count(),
            'current_session': self.state.current_session_info(),
            'gameplay_time': self.manager.gameplay_time(),
        }

    def export_data(self) -> Dict:
        """Full JSON export of the participant's data"""
        self._require('export_data')

        return {
            'user_data': self.manager.snapshot(),
            'statistical_summary': statistical_summary(self.state.metrics),
            'session_analytics': self.tracker.export_session_data(),
            'export_timestamp': self.clock.now_ms(),
        }

    def export_csv(self) -> str:
        self._require('export_data')
        return metrics_to_csv(self.state.metrics)

    def export_all(self) -> Dict:
        return self.backup.export_all()

    def backups(self) -> List[Dict]:
        now = self.clock.now_ms()
        try:
            return [record.to_dict(now) for record in self.backup.list_backups()]
        except StoreError as e:
            logger.error(f"Error listing backups: {e}", exc_info=True)
            return []

    def debug_info(self) -> Dict:
        return {
            'is_initialized': self.is_initialized,
            'status': self.status(),
            'tracker': self.tracker.debug_info(),
            'validation': self.validation.debug_info(),
            'backup': self.backup.debug_info(),
        }
