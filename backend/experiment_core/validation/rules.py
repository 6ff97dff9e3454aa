"""
Consistency rules - checks over the shared experiment state

Each check returns a RuleResult; run_rules() evaluates a fixed ordered list,
converting any exception raised inside a check into an error entry for that
rule instead of aborting the remaining rules.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..config import TOTAL_SESSIONS

logger = logging.getLogger(__name__)

MIN_AVERAGE_DURATION_MS = 2 * 60 * 1000
MAX_AVERAGE_DURATION_MS = 25 * 60 * 1000
MIN_COMPLETION_RATE = 0.8
NO_EVENTS_GRACE_MS = 60 * 1000


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class RuleResult:
    valid: bool
    message: str = ""
    data: Dict = field(default_factory=dict)

    @classmethod
    def ok(cls) -> 'RuleResult':
        return cls(valid=True)

    @classmethod
    def fail(cls, message: str, **data) -> 'RuleResult':
        return cls(valid=False, message=message, data=data)


@dataclass
class ValidationRule:
    name: str
    check: Callable[[], RuleResult]
    severity: Severity


@dataclass
class ValidationReport:
    """Aggregate result of run_rules()"""
    passed: List[str] = field(default_factory=list)
    warnings: List[Dict] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict:
        return {
            'passed': list(self.passed),
            'warnings': list(self.warnings),
            'errors': list(self.errors),
            'has_errors': self.has_errors,
            'has_warnings': self.has_warnings,
        }


def run_rules(rules: Sequence[ValidationRule]) -> ValidationReport:
    report = ValidationReport()

    for rule in rules:
        try:
            result = rule.check()
        except Exception as e:
            logger.error(f"Validation rule '{rule.name}' raised: {e}", exc_info=True)
            report.errors.append({
                'rule': rule.name,
                'message': f"Validation rule failed: {e}",
                'data': {'error': repr(e)},
            })
            continue

        if result.valid:
            report.passed.append(rule.name)
            continue

        entry = {'rule': rule.name, 'message': result.message, 'data': result.data}
        if rule.severity is Severity.ERROR:
            report.errors.append(entry)
        else:
            report.warnings.append(entry)

    return report


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------

def validate_session_order(session_order: Sequence[int]) -> RuleResult:
    """Exactly 9 distinct permutation ids, each in [0, 8]"""
    order = list(session_order)

    if len(order) != TOTAL_SESSIONS:
        return RuleResult.fail(
            f"Invalid session order length: {len(order)}, expected {TOTAL_SESSIONS}",
            session_order=order,
        )

    unique_ids = set(order)
    if len(unique_ids) != TOTAL_SESSIONS:
        return RuleResult.fail(
            "Session order contains duplicate permutation IDs",
            session_order=order,
            duplicates=len(order) - len(unique_ids),
        )

    if not all(isinstance(pid, int) and 0 <= pid < TOTAL_SESSIONS for pid in order):
        return RuleResult.fail("Session order contains invalid permutation IDs", session_order=order)

    return RuleResult.ok()


def session_id_gaps(metrics: Sequence[Dict]) -> List[int]:
    """Ids in 1..len(metrics) missing from the metrics' session ids"""
    session_ids = {m.get('session_id') for m in metrics}
    return [i for i in range(1, len(metrics) + 1) if i not in session_ids]


def validate_user_data_consistency(user_id: Optional[str], metrics: Sequence[Dict]) -> RuleResult:
    if not user_id:
        return RuleResult.fail("No user ID set")

    if any(m.get('user_id') != user_id for m in metrics):
        return RuleResult.fail("User ID mismatch in metrics data", user_id=user_id, metrics_count=len(metrics))

    gaps = session_id_gaps(metrics)
    if gaps:
        return RuleResult.fail("Session ID sequence has gaps", gaps=gaps)

    return RuleResult.ok()


def validate_completion_rate(analytics: Dict) -> RuleResult:
    total = analytics['total_sessions']
    rate = analytics['completed_sessions'] / total if total > 0 else 1.0

    if rate < MIN_COMPLETION_RATE:
        return RuleResult.fail(f"Low session completion rate: {round(rate * 100)}%", **analytics)

    return RuleResult.ok()


def validate_session_duration(analytics: Dict) -> RuleResult:
    average = analytics['average_duration']

    if average < MIN_AVERAGE_DURATION_MS:
        return RuleResult.fail(
            f"Average session duration too short: {round(average / 1000)}s",
            avg_duration=average,
            min_expected=MIN_AVERAGE_DURATION_MS,
        )

    if average > MAX_AVERAGE_DURATION_MS:
        return RuleResult.fail(
            f"Average session duration too long: {round(average / 1000)}s",
            avg_duration=average,
            max_expected=MAX_AVERAGE_DURATION_MS,
        )

    return RuleResult.ok()


def count_event_types(events: Sequence[Dict]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for event in events:
        counts[event.get('type')] = counts.get(event.get('type'), 0) + 1
    return counts


def validate_metrics_quality(
    current_session: Optional[Dict],
    session_elapsed_ms: Optional[int]
) -> RuleResult:
    if not current_session:
        return RuleResult.ok()

    events = current_session['events']
    summary = current_session['summary']

    if not events and session_elapsed_ms is not None and session_elapsed_ms > NO_EVENTS_GRACE_MS:
        return RuleResult.fail(
            "No events recorded after 1 minute of gameplay",
            event_count=0,
            session_time=session_elapsed_ms,
        )

    ghosts_in_log = count_event_types(events).get('ghostEaten', 0)
    ghosts_in_summary = summary.get('total_ghosts_eaten', 0)
    if ghosts_in_log != ghosts_in_summary:
        return RuleResult.fail(
            "Ghost eaten count mismatch between events and summary",
            events=ghosts_in_log,
            summary=ghosts_in_summary,
        )

    return RuleResult.ok()
