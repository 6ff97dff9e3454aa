import pytest

from experiment_core import ExperimentCoordinator
from experiment_core.experiment import PERMUTATIONS
from experiment_core.infra import Topic

from fakes import ManualScheduler


def play_session(coordinator, events=()):
    coordinator.start_session()
    for event_type, data in events:
        assert coordinator.log_event(event_type, data) is True
    return coordinator.end_session()


def test_initialize_user_reports_status(alice):
    status = alice.status()

    assert status['user_id'] == 'alice'
    assert status['phase'] == 'pre_session'
    assert status['completed_sessions'] == 0
    assert status['remaining_sessions'] == 9
    assert sorted(status['session_order']) == list(range(9))


def test_blank_user_rejected(coordinator):
    with pytest.raises(ValueError):
        coordinator.initialize_user('')


def test_actions_require_a_user(coordinator):
    with pytest.raises(RuntimeError):
        coordinator.start_session()


def test_session_flow_follows_assigned_order(alice):
    order = alice.state.session_order

    first = alice.start_session(device_info={'platform': 'linux'})
    assert first['speed_config'] == PERMUTATIONS[order[0]]
    assert alice.status()['phase'] == 'in_session'
    assert alice.tracker.current_session.device_info == {'platform': 'linux'}

    record = alice.end_session()
    assert record['session_id'] == 1
    assert alice.status()['phase'] == 'between_sessions'

    second = alice.start_session()
    assert second['session_id'] == 2
    assert second['permutation_id'] == order[1]


def test_invalid_transitions_raise(alice):
    with pytest.raises(RuntimeError):
        alice.end_session()

    alice.start_session()
    with pytest.raises(RuntimeError, match='Session already in progress'):
        alice.start_session()
    with pytest.raises(RuntimeError):
        alice.initialize_user('bob')


def test_log_event_counts_as_activity(alice, clock):
    alice.start_session()
    clock.advance(100)

    assert alice.log_event('pelletEaten', {'type': 'pacdot'}) is True
    assert alice.tracker.last_activity_time == clock.now_ms()
    assert alice.log_event('pelletEaten', {'type': 'banana'}) is False


def test_signal_event_rejects_metric_types(alice):
    alice.start_session()

    with pytest.raises(ValueError):
        alice.signal_event('death')
    assert alice.signal_event('awardPoints') is True


def test_timeout_forces_session_end(alice, scheduler):
    published = []
    alice.bus.subscribe(Topic.FORCE_END_SESSION, published.append)
    alice.start_session()

    scheduler.advance(1830)

    assert published == [{'reason': 'timeout'}]
    assert alice.state.is_experiment_active is False
    assert alice.state.completed_sessions_count() == 1
    assert alice.status()['phase'] == 'between_sessions'
    assert alice.tracker.session_history[0]['completed'] is True
    assert 'periodic-backup' not in scheduler.pending()


def test_visibility_pauses_gameplay_time(alice, clock):
    alice.start_session()
    clock.advance(10)
    alice.visibility_changed(hidden=True)
    clock.advance(20)
    alice.visibility_changed(hidden=False)
    clock.advance(5)

    record = alice.end_session()
    assert record['summary']['game_time'] == 15000


def test_session_resumes_after_restart(alice, store, clock):
    alice.start_session()
    alice.log_event('ghostEaten', {'ghostId': 'blinky'})
    alice.suspend()
    alice.shutdown()

    clock.advance(120)
    restarted = ExperimentCoordinator(store=store, scheduler=ManualScheduler(clock), clock=clock)
    restarted.initialize()
    restarted.initialize_user('alice')

    session = restarted.start_session()

    assert session['resumed'] is True
    assert session['session_id'] == 1
    assert len(session['events']) == 1
    milestones = [m['type'] for m in restarted.tracker.current_session.milestones]
    assert milestones == ['session_started', 'page_unload', 'session_started']
    restarted.shutdown()


def test_export_requires_completed_sessions(alice):
    with pytest.raises(RuntimeError):
        alice.export_data()


def test_partial_export_between_sessions(alice):
    play_session(alice, [('ghostEaten', {'ghostId': 'inky'}), ('turnComplete', {'success': True})])

    exported = alice.export_data()
    assert exported['user_data']['completed_sessions'] == 1
    assert exported['statistical_summary']['performance']['total_ghosts_eaten']['mean'] == 1.0
    assert exported['session_analytics']['analytics']['completed_sessions'] == 1

    csv_text = alice.export_csv()
    assert csv_text.startswith('# Session Summary\n')
    assert '# Raw Events' in csv_text


def test_complete_experiment_and_reset(alice):
    for _ in range(9):
        play_session(alice)

    assert alice.status()['phase'] == 'experiment_complete'
    with pytest.raises(RuntimeError):
        alice.start_session()

    status = alice.reset_experiment()

    assert status['phase'] == 'pre_session'
    assert status['completed_sessions'] == 0
    assert alice.tracker.session_history == []


def test_reset_not_allowed_mid_experiment(alice):
    play_session(alice)
    with pytest.raises(RuntimeError):
        alice.reset_experiment()


def test_recover_restores_progress(alice):
    play_session(alice)
    alice.state.metrics = []

    assert alice.recover('latest') is not None
    assert alice.status()['completed_sessions'] == 1
    assert alice.status()['phase'] == 'between_sessions'


def test_backups_listing(alice):
    alice.start_session()
    backups = alice.backups()

    assert backups[0]['kind'] == 'session'
    assert backups[0]['age'] == 0


def test_shutdown_cancels_timers(coordinator, scheduler):
    coordinator.initialize_user('alice')
    coordinator.start_session()
    assert scheduler.pending() == ['idle-check', 'periodic-backup']

    coordinator.shutdown()

    assert scheduler.pending() == []


def test_debug_info(alice):
    info = alice.debug_info()

    assert info['is_initialized'] is True
    assert info['validation']['progress_state']['current_phase'] == 'pre_session'
    assert len(info['validation']['validation_rules']) == 5


def test_injected_collaborators_are_used_even_when_empty(store, scheduler, clock, bus):
    assert len(store) == 0

    coordinator = ExperimentCoordinator(store=store, scheduler=scheduler, clock=clock, bus=bus)

    assert coordinator.store is store
    assert coordinator.scheduler is scheduler
    assert coordinator.clock is clock
    assert coordinator.bus is bus

    coordinator.initialize()
    coordinator.initialize_user('alice')
    assert 'experiment_alice' in store.keys()
    coordinator.shutdown()
