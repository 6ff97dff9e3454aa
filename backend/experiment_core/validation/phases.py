"""
Progress phases - action-gating state machine

Phase Table:
| Phase               | Entered on                         | Allowed actions                          | Restrictions                      |
|---------------------|------------------------------------|------------------------------------------|-----------------------------------|
| pre_session         | init                               | start_session                            | -                                 |
| in_session          | session-started                    | end_session, pause_session               | start_new_session, change_user    |
| between_sessions    | session-ended, completed < 9       | start_next_session, export_partial_data  | -                                 |
| experiment_complete | session-ended, completed >= 9      | export_data, reset_experiment            | start_session                     |
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple


class ProgressPhase(Enum):
    PRE_SESSION = "pre_session"
    IN_SESSION = "in_session"
    BETWEEN_SESSIONS = "between_sessions"
    EXPERIMENT_COMPLETE = "experiment_complete"


# phase -> (allowed_actions, restrictions)
PHASE_RULES: Dict[ProgressPhase, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    ProgressPhase.PRE_SESSION: (
        ('start_session',),
        (),
    ),
    ProgressPhase.IN_SESSION: (
        ('end_session', 'pause_session'),
        ('start_new_session', 'change_user'),
    ),
    ProgressPhase.BETWEEN_SESSIONS: (
        ('start_next_session', 'export_partial_data'),
        (),
    ),
    ProgressPhase.EXPERIMENT_COMPLETE: (
        ('export_data', 'reset_experiment'),
        ('start_session',),
    ),
}


@dataclass
class ProgressState:
    """Current phase with its allowed actions, restrictions and warnings"""
    phase: ProgressPhase = ProgressPhase.PRE_SESSION
    allowed_actions: List[str] = field(default_factory=lambda: list(PHASE_RULES[ProgressPhase.PRE_SESSION][0]))
    restrictions: List[str] = field(default_factory=list)
    warnings: List = field(default_factory=list)

    def enter(self, phase: ProgressPhase, clear_warnings: bool = True):
        allowed, restricted = PHASE_RULES[phase]
        self.phase = phase
        self.allowed_actions = list(allowed)
        self.restrictions = list(restricted)
        if clear_warnings:
            self.warnings = []

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions and action not in self.restrictions

    def to_dict(self) -> Dict:
        return {
            'current_phase': self.phase.value,
            'allowed_actions': list(self.allowed_actions),
            'restrictions': list(self.restrictions),
            'warnings': list(self.warnings),
        }
