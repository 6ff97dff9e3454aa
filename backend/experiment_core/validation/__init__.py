"""
Validation - phase state machine, action preconditions and consistency rules
"""
from .engine import ActionValidation, ValidationEngine
from .phases import PHASE_RULES, ProgressPhase, ProgressState
from .rules import RuleResult, Severity, ValidationReport, ValidationRule, validate_session_order

__all__ = [
    'ValidationEngine', 'ActionValidation', 'ProgressPhase', 'ProgressState', 'PHASE_RULES',
    'RuleResult', 'Severity', 'ValidationReport', 'ValidationRule', 'validate_session_order',
]
