import pytest

from experiment_core.infra import Topic
from experiment_core.validation import (
    ProgressPhase,
    RuleResult,
    Severity,
    ValidationEngine,
    ValidationRule,
    validate_session_order,
)
from experiment_core.validation.rules import (
    run_rules,
    session_id_gaps,
    validate_metrics_quality,
    validate_session_duration,
    validate_user_data_consistency,
)


@pytest.fixture
def engine(state, bus, tracker, store, clock):
    engine = ValidationEngine(state, bus, tracker, store, clock=clock)
    engine.initialize()
    return engine


@pytest.fixture
def running(engine, manager, bus):
    """alice with session 1 started"""
    manager.initialize_user('alice')
    session = manager.start_session()
    bus.publish(Topic.SESSION_STARTED, {'session_id': 1, 'speed_config': session['speed_config']})
    return engine


def finish(manager, bus):
    manager.end_session()
    bus.publish(Topic.SESSION_ENDED)


# ----------------------------------------------------------------------
# Phases
# ----------------------------------------------------------------------

def test_initial_phase(engine):
    assert engine.phase is ProgressPhase.PRE_SESSION
    assert engine.can_perform_action('start_session') is True
    assert engine.can_perform_action('end_session') is False


def test_session_start_enters_in_session(running):
    assert running.phase is ProgressPhase.IN_SESSION
    assert running.can_perform_action('end_session') is True
    assert running.can_perform_action('start_new_session') is False

    result = running.validate_action('start_session')
    assert result.allowed is False
    assert 'Session already in progress' in result.errors


def test_ending_session_with_zero_events_is_a_warning(running):
    result = running.validate_action('end_session')

    assert result.allowed is True
    assert result.errors == []
    assert result.warnings == ['Ending session with no recorded events']


def test_session_end_moves_between_sessions(running, manager, bus):
    finish(manager, bus)

    assert running.phase is ProgressPhase.BETWEEN_SESSIONS
    assert running.can_perform_action('start_next_session') is True
    assert running.validate_action('start_next_session').allowed is True


def test_ninth_session_completes_experiment(running, manager, bus):
    finish(manager, bus)
    for _ in range(8):
        manager.start_session()
        bus.publish(Topic.SESSION_STARTED)
        finish(manager, bus)

    assert running.phase is ProgressPhase.EXPERIMENT_COMPLETE
    assert running.can_perform_action('export_data') is True
    assert running.can_perform_action('start_session') is False

    result = running.validate_action('start_session')
    assert 'All sessions already completed' in result.errors

    export = running.validate_action('export_data')
    assert export.allowed is True


def test_sync_phase_from_stored_progress(engine, state):
    state.metrics = [{}] * 3
    engine.sync_phase()
    assert engine.phase is ProgressPhase.BETWEEN_SESSIONS

    state.metrics = [{}] * 9
    engine.sync_phase()
    assert engine.phase is ProgressPhase.EXPERIMENT_COMPLETE


def test_idle_adds_warning(running, bus):
    bus.publish(Topic.IDLE, {'idle_time_ms': 330000})

    warning = running.progress.warnings[-1]
    assert warning['type'] == 'idle_session'
    assert warning['message'] == 'Session idle for 330 seconds'


def test_timeout_forces_session_end(running, bus):
    forced = []
    bus.subscribe(Topic.FORCE_END_SESSION, forced.append)

    bus.publish(Topic.TIMEOUT, {'session_time_ms': 1830000})

    assert forced == [{'reason': 'timeout'}]
    assert 'forced_end_timeout' in running.progress.restrictions
    assert running.progress.warnings[-1]['type'] == 'session_timeout'


def test_session_started_with_validation_errors_warns(engine, manager, state, bus):
    manager.initialize_user('alice')
    manager.start_session()
    state.session_order = [0, 0, 1, 2, 3, 4, 5, 6, 7]

    bus.publish(Topic.SESSION_STARTED, {'session_id': 1})

    assert 'Session started with validation errors' in engine.progress.warnings


# ----------------------------------------------------------------------
# Action validators
# ----------------------------------------------------------------------

def test_start_session_requires_user(engine):
    result = engine.validate_action('start_session')

    assert result.allowed is False
    assert 'User ID not set' in result.errors


def test_start_session_warns_about_resumable_state(running, engine, manager, bus):
    # a saved tracker state exists while a session runs; after a reload the
    # machine is back in pre_session
    engine.progress.enter(ProgressPhase.PRE_SESSION)
    result = engine.validate_action('start_session')

    assert result.allowed is True
    assert 'Previous session state found - will resume' in result.warnings


def test_export_without_completed_sessions(engine):
    result = engine.validate_action('export_data')

    assert result.allowed is False
    assert 'No completed sessions to export' in result.errors


def test_export_warns_when_storage_unavailable(running, manager, bus, store):
    finish(manager, bus)
    store.available = False

    result = running.validate_action('export_partial_data')

    assert result.allowed is True
    assert result.warnings == ['Storage not available - export may be incomplete']


def test_reset_during_session_denied(running):
    result = running.validate_action('reset_experiment')

    assert result.allowed is False
    assert 'Cannot reset during active session' in result.errors


def test_unknown_action_gets_phase_check_only(running):
    result = running.validate_action('pause_session')
    assert result.to_dict() == {'allowed': True, 'errors': [], 'warnings': []}

    result = running.validate_action('fly')
    assert result.to_dict() == {'allowed': False, 'errors': [], 'warnings': []}


# ----------------------------------------------------------------------
# Rules
# ----------------------------------------------------------------------

@pytest.mark.parametrize("order, valid", [
    ([4, 0, 7, 1, 8, 2, 6, 3, 5], True),
    ([0, 1, 2, 3, 4, 5, 6, 7], False),
    ([0, 0, 1, 2, 3, 4, 5, 6, 7], False),
    ([0, 1, 2, 3, 4, 5, 6, 7, 9], False),
    ([], False),
])
def test_validate_session_order(order, valid):
    assert validate_session_order(order).valid is valid


def test_session_id_gaps():
    metrics = [{'session_id': 1}, {'session_id': 3}, {'session_id': 4}]
    assert session_id_gaps(metrics) == [2]


def test_user_data_consistency():
    assert validate_user_data_consistency(None, []).valid is False
    assert validate_user_data_consistency('alice', [{'user_id': 'bob', 'session_id': 1}]).valid is False
    assert validate_user_data_consistency('alice', [{'user_id': 'alice', 'session_id': 2}]).message == \
        "Session ID sequence has gaps"
    assert validate_user_data_consistency('alice', [{'user_id': 'alice', 'session_id': 1}]).valid is True


def test_session_duration_bounds():
    assert validate_session_duration({'average_duration': 60_000}).valid is False
    assert validate_session_duration({'average_duration': 10 * 60_000}).valid is True
    assert validate_session_duration({'average_duration': 30 * 60_000}).valid is False


def test_metrics_quality_ghost_count_mismatch():
    session = {
        'events': [{'type': 'ghostEaten'}, {'type': 'ghostEaten'}],
        'summary': {'total_ghosts_eaten': 1},
    }
    result = validate_metrics_quality(session, 5000)

    assert result.valid is False
    assert result.data == {'events': 2, 'summary': 1}


def test_metrics_quality_no_events_after_a_minute():
    session = {'events': [], 'summary': {}}

    assert validate_metrics_quality(session, 30_000).valid is True
    assert validate_metrics_quality(session, 90_000).valid is False
    assert validate_metrics_quality(None, 90_000).valid is True


def test_failing_rule_is_isolated():
    def broken():
        raise KeyError('summary')

    report = run_rules([
        ValidationRule('broken', broken, Severity.WARNING),
        ValidationRule('fine', RuleResult.ok, Severity.ERROR),
        ValidationRule('soft', lambda: RuleResult.fail('meh'), Severity.WARNING),
    ])

    assert report.passed == ['fine']
    assert report.errors[0]['rule'] == 'broken'
    assert report.errors[0]['message'].startswith('Validation rule failed:')
    assert [w['rule'] for w in report.warnings] == ['soft']


def test_run_validation_reports_order_error(engine, manager, state):
    manager.initialize_user('alice')
    state.session_order = state.session_order[:5]

    report = engine.run_validation()

    assert report.has_errors
    assert report.errors[0]['rule'] == 'session_order_integrity'


def test_progress_summary(running, manager, bus):
    finish(manager, bus)
    summary = running.progress_summary()

    assert summary['phase'] == 'between_sessions'
    assert summary['progress'] == '1/9'
    assert summary['progress_percent'] == 11
    assert summary['analytics']['completion_rate'] == 100
    assert 'validation' in summary
