"""
Validation Engine - phase gating and consistency checking

This module decides what the participant may do next:
- Phase state machine driven by session-started / session-ended events
- can_perform_action(): allowed-and-not-restricted check for the phase
- validate_action(): per-action preconditions returning errors/warnings
- run_validation(): ordered rule-based consistency check of shared state
- Idle and timeout reactions (warnings, forced session end)

Usage:
    engine = ValidationEngine(state, bus, tracker, store)
    engine.initialize()

    if engine.can_perform_action('start_session'):
        result = engine.validate_action('start_session')
        if result.allowed:
            ...

    report = engine.run_validation()
    report.has_errors, report.errors
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..config import TOTAL_SESSIONS
from ..experiment.state import ExperimentState
from ..infra.bus import EventBus, Topic
from ..infra.clock import SystemClock
from ..infra.store import DurableStore
from .phases import ProgressPhase, ProgressState
from .rules import (
    Severity,
    ValidationReport,
    ValidationRule,
    run_rules,
    validate_completion_rate,
    validate_metrics_quality,
    validate_session_duration,
    validate_session_order,
    validate_user_data_consistency,
)

logger = logging.getLogger(__name__)


@dataclass
class ActionValidation:
    """Outcome of validate_action()"""
    allowed: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def deny(self, message: str):
        self.errors.append(message)
        self.allowed = False

    def to_dict(self) -> Dict:
        return {'allowed': self.allowed, 'errors': list(self.errors), 'warnings': list(self.warnings)}


class ValidationEngine:
    """
    Phase state machine plus rule-based consistency checker.

    Reads:
    - ExperimentState (user id, order, metrics, current session)
    - SessionLifecycleTracker (analytics, session start, saved state)
    - DurableStore availability
    """

    def __init__(
        self,
        state: ExperimentState,
        bus: EventBus,
        tracker: 'SessionLifecycleTracker',
        store: DurableStore,
        clock=None
    ):
        self.state = state
        self.bus = bus
        self.tracker = tracker
        self.store = store
        self.clock = clock or SystemClock()

        self.progress = ProgressState()
        self.rules: List[ValidationRule] = self._build_rules()
        self.is_initialized = False

    def _build_rules(self) -> List[ValidationRule]:
        return [
            ValidationRule(
                'session_order_integrity',
                lambda: validate_session_order(self.state.session_order),
                Severity.ERROR,
            ),
            ValidationRule(
                'user_data_consistency',
                lambda: validate_user_data_consistency(self.state.user_id, self.state.metrics),
                Severity.ERROR,
            ),
            ValidationRule(
                'session_completion_rate',
                lambda: validate_completion_rate(self.tracker.analytics()),
                Severity.WARNING,
            ),
            ValidationRule(
                'session_duration_bounds',
                lambda: validate_session_duration(self.tracker.analytics()),
                Severity.WARNING,
            ),
            ValidationRule(
                'metrics_data_quality',
                lambda: validate_metrics_quality(self.state.current_session, self._session_elapsed_ms()),
                Severity.WARNING,
            ),
        ]

    def _session_elapsed_ms(self) -> Optional[int]:
        if self.tracker.session_start_time is None:
            return None
        return self.clock.now_ms() - self.tracker.session_start_time

    def initialize(self):
        if self.is_initialized:
            return

        self.bus.subscribe(Topic.SESSION_STARTED, self.on_session_start)
        self.bus.subscribe(Topic.SESSION_ENDED, self.on_session_end)
        self.bus.subscribe(Topic.IDLE, self.on_idle)
        self.bus.subscribe(Topic.TIMEOUT, self.on_timeout)
        self.is_initialized = True

        logger.info(f"ValidationEngine initialized ({len(self.rules)} rules)")

    @property
    def phase(self) -> ProgressPhase:
        return self.progress.phase

    def sync_phase(self):
        """
        Place the machine in the phase implied by stored progress.

        Used after a participant is (re)initialized mid-experiment.
        """
        completed = self.state.completed_sessions_count()
        if self.state.current_session is not None:
            self.progress.enter(ProgressPhase.IN_SESSION)
        elif completed >= TOTAL_SESSIONS:
            self.progress.enter(ProgressPhase.EXPERIMENT_COMPLETE)
        elif completed > 0:
            self.progress.enter(ProgressPhase.BETWEEN_SESSIONS)
        else:
            self.progress.enter(ProgressPhase.PRE_SESSION)

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def on_session_start(self, payload: Optional[Dict] = None):
        self.progress.enter(ProgressPhase.IN_SESSION, clear_warnings=False)

        report = self.run_validation()
        if report.has_errors:
            self.progress.warnings.append('Session started with validation errors')
            logger.warning(f"Session started with validation errors: {[e['rule'] for e in report.errors]}")

        logger.info(f"Phase -> {self.progress.phase.value}")

    def on_session_end(self, payload: Optional[Dict] = None):
        if self.state.completed_sessions_count() >= TOTAL_SESSIONS:
            self.progress.enter(ProgressPhase.EXPERIMENT_COMPLETE)
        else:
            self.progress.enter(ProgressPhase.BETWEEN_SESSIONS)

        logger.info(f"Phase -> {self.progress.phase.value}")

    def on_idle(self, payload: Optional[Dict] = None):
        idle_time = (payload or {}).get('idle_time_ms', 0)
        self.progress.warnings.append({
            'type': 'idle_session',
            'message': f"Session idle for {round(idle_time / 1000)} seconds",
            'timestamp': self.clock.now_ms(),
        })

    def on_timeout(self, payload: Optional[Dict] = None):
        session_time = (payload or {}).get('session_time_ms', 0)
        self.progress.warnings.append({
            'type': 'session_timeout',
            'message': f"Session exceeded maximum duration ({round(session_time / 1000)} seconds)",
            'timestamp': self.clock.now_ms(),
        })
        self.force_end_session('timeout')

    def force_end_session(self, reason: str):
        """Restrict further actions and ask the host to end the session"""
        self.progress.restrictions.append(f"forced_end_{reason}")
        logger.warning(f"Forcing session end: {reason}")
        self.bus.publish(Topic.FORCE_END_SESSION, {'reason': reason})

    # ------------------------------------------------------------------
    # Action gating
    # ------------------------------------------------------------------

    def can_perform_action(self, action: str) -> bool:
        return self.progress.can_perform(action)

    def validate_action(self, action: str, context: Optional[Dict] = None) -> ActionValidation:
        """
        Check an action before the host executes it.

        Unknown actions get the phase check only.
        """
        validation = ActionValidation(allowed=self.can_perform_action(action))

        validator = {
            'start_session': self.validate_start_session,
            'start_next_session': self.validate_start_session,
            'end_session': self.validate_end_session,
            'export_data': self.validate_export_data,
            'export_partial_data': self.validate_export_data,
            'reset_experiment': self.validate_reset_experiment,
        }.get(action)

        if validator is not None:
            validator(validation, context or {})

        return validation

    def validate_start_session(self, validation: ActionValidation, context: Dict):
        if self.state.completed_sessions_count() >= TOTAL_SESSIONS:
            validation.deny('All sessions already completed')

        if self.progress.phase is ProgressPhase.IN_SESSION:
            validation.deny('Session already in progress')

        if not self.state.user_id:
            validation.deny('User ID not set')

        if self.tracker.load_session_state():
            validation.warnings.append('Previous session state found - will resume')

    def validate_end_session(self, validation: ActionValidation, context: Dict):
        if self.progress.phase is not ProgressPhase.IN_SESSION:
            validation.deny('No active session to end')

        current = self.state.current_session
        if current is not None and len(current.get('events') or []) == 0:
            validation.warnings.append('Ending session with no recorded events')

    def validate_export_data(self, validation: ActionValidation, context: Dict):
        if self.state.completed_sessions_count() == 0:
            validation.deny('No completed sessions to export')

        if not self.store.is_available():
            validation.warnings.append('Storage not available - export may be incomplete')

    def validate_reset_experiment(self, validation: ActionValidation, context: Dict):
        if self.progress.phase is ProgressPhase.IN_SESSION:
            validation.deny('Cannot reset during active session')

        completed = self.state.completed_sessions_count()
        if completed > 0:
            validation.warnings.append(f"Resetting will lose {completed} completed sessions")

    # ------------------------------------------------------------------
    # Consistency check
    # ------------------------------------------------------------------

    def run_validation(self) -> ValidationReport:
        return run_rules(self.rules)

    def progress_summary(self) -> Dict:
        report = self.run_validation()
        completed = self.state.completed_sessions_count()
        analytics = self.tracker.analytics()

        total = analytics['total_sessions']
        completion_rate = round(analytics['completed_sessions'] / total * 100) if total > 0 else 100

        return {
            'phase': self.progress.phase.value,
            'progress': f"{completed}/{TOTAL_SESSIONS}",
            'progress_percent': round(completed / TOTAL_SESSIONS * 100),
            'allowed_actions': list(self.progress.allowed_actions),
            'restrictions': list(self.progress.restrictions),
            'warnings': list(self.progress.warnings),
            'validation': report.to_dict(),
            'analytics': {
                'completion_rate': completion_rate,
                'average_duration': round(analytics['average_duration'] / 1000),
                'total_events': analytics['total_events'],
            },
        }

    def debug_info(self) -> Dict:
        return {
            'is_initialized': self.is_initialized,
            'progress_state': self.progress.to_dict(),
            'validation_rules': [rule.name for rule in self.rules],
        }
