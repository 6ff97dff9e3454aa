import json

import pytest

from experiment_core.infra import Topic
from experiment_core.session import SessionLifecycleTracker
from experiment_core.session.tracker import session_history_key, session_state_key


@pytest.fixture
def alice_state(state):
    state.user_id = 'alice'
    return state


@pytest.fixture
def produced(bus):
    events = {Topic.IDLE: [], Topic.TIMEOUT: []}
    bus.subscribe(Topic.IDLE, events[Topic.IDLE].append)
    bus.subscribe(Topic.TIMEOUT, events[Topic.TIMEOUT].append)
    return events


def start(bus, session_id=1, **extra):
    bus.publish(Topic.SESSION_STARTED, {
        'session_id': session_id,
        'speed_config': {'id': 4, 'pacman': 'normal', 'ghost': 'normal'},
        **extra,
    })


def milestone_types(tracker):
    return [m['type'] for m in tracker.current_session.milestones]


def test_session_start_creates_record(tracker, alice_state, bus, store, clock):
    start(bus, device_info={'platform': 'linux'})

    record = tracker.current_session
    assert record.session_id == 1
    assert record.start_time == clock.now_ms()
    assert record.device_info == {'platform': 'linux'}
    assert record.browser_info == {}
    assert milestone_types(tracker) == ['session_started']

    saved = json.loads(store.get(session_state_key('alice')))
    assert saved['session_id'] == 1
    assert saved['last_saved'] == clock.now_ms()


def test_idle_detected_after_threshold(tracker, alice_state, bus, scheduler, produced):
    start(bus)

    scheduler.advance(300)
    assert produced[Topic.IDLE] == []

    scheduler.advance(30)
    assert produced[Topic.IDLE] == [{'idle_time_ms': 330000}]

    # re-emitted while the condition holds
    scheduler.advance(30)
    assert len(produced[Topic.IDLE]) == 2
    assert 'idle_detected' in milestone_types(tracker)


def test_activity_resets_idle(tracker, alice_state, bus, scheduler, produced):
    start(bus)
    scheduler.advance(290)
    bus.publish(Topic.ACTIVITY)
    scheduler.advance(40)

    assert produced[Topic.IDLE] == []


def test_timeout_after_max_duration(tracker, alice_state, bus, scheduler, produced):
    start(bus)

    scheduler.advance(1800)
    assert produced[Topic.TIMEOUT] == []

    scheduler.advance(30)
    assert produced[Topic.TIMEOUT] == [{'session_time_ms': 1830000}]
    assert 'session_timeout' in milestone_types(tracker)


def test_no_checks_without_session(tracker, alice_state, scheduler, produced):
    scheduler.advance(3600)

    assert produced[Topic.IDLE] == []
    assert produced[Topic.TIMEOUT] == []


def test_session_end_moves_record_to_history(tracker, alice_state, bus, store, clock):
    start(bus)
    clock.advance(90)
    bus.publish(Topic.SESSION_ENDED)

    assert tracker.current_session is None
    assert store.get(session_state_key('alice')) is None

    history = json.loads(store.get(session_history_key('alice')))
    assert history['userId'] == 'alice'
    assert history['lastUpdated'] == clock.now_ms()

    record = history['sessions'][0]
    assert record['completed'] is True
    assert record['duration'] == 90000
    assert [m['type'] for m in record['milestones']] == ['session_started', 'session_ended']
    assert record['milestones'][-1]['total_events'] == 0


def test_session_end_without_session_is_ignored(tracker, alice_state, bus):
    bus.publish(Topic.SESSION_ENDED)
    assert tracker.session_history == []


def test_page_suspend_saves_without_finalizing(tracker, alice_state, bus, store, clock):
    start(bus)
    clock.advance(12)
    bus.publish(Topic.PAGE_SUSPEND)

    assert tracker.session_history == []
    milestone = tracker.current_session.milestones[-1]
    assert milestone['type'] == 'page_unload'
    assert milestone['completed'] is False
    assert milestone['duration'] == 12000

    saved = json.loads(store.get(session_state_key('alice')))
    assert saved['milestones'][-1]['type'] == 'page_unload'


def test_visibility_milestones(tracker, alice_state, bus, clock):
    start(bus)
    clock.advance(5)
    bus.publish(Topic.VISIBILITY_CHANGED, {'hidden': True})
    clock.advance(5)
    bus.publish(Topic.VISIBILITY_CHANGED, {'hidden': False})

    assert milestone_types(tracker) == ['session_started', 'tab_hidden', 'tab_visible']
    assert tracker.last_activity_time == clock.now_ms()


def test_stale_session_state_is_ignored(tracker, alice_state, bus, clock):
    start(bus)
    assert tracker.load_session_state() is not None

    clock.advance(61 * 60)
    assert tracker.load_session_state() is None


def test_resumed_session_keeps_milestones(tracker, alice_state, bus, store, scheduler, clock):
    start(bus)
    bus.publish(Topic.VISIBILITY_CHANGED, {'hidden': True})
    started_at = tracker.current_session.start_time

    # fresh tracker over the same store, as after a reload
    clock.advance(60)
    reloaded = SessionLifecycleTracker(alice_state, bus, store, scheduler, clock=clock)
    reloaded.on_session_start({'session_id': 1, 'speed_config': {'id': 4}, 'resumed': True})

    record = reloaded.current_session
    assert record.start_time == started_at
    assert [m['type'] for m in record.milestones] == ['session_started', 'tab_hidden', 'session_started']
    assert record.milestones[-1]['resumed'] is True


def test_analytics_averages_completed_sessions(tracker, alice_state, bus, clock):
    for session_id, seconds in ((1, 60), (2, 180)):
        start(bus, session_id=session_id, events=[{'type': 'death'}])
        clock.advance(seconds)
        bus.publish(Topic.SESSION_ENDED)

    analytics = tracker.analytics()

    assert analytics['total_sessions'] == 2
    assert analytics['completed_sessions'] == 2
    assert analytics['incomplete_sessions'] == 0
    assert analytics['average_duration'] == 120000.0
    assert analytics['total_events'] == 2
    assert analytics['session_history'][1]['milestones'] == 2


def test_analytics_empty(tracker):
    analytics = tracker.analytics()
    assert analytics['average_duration'] == 0.0
    assert analytics['session_history'] == []


def test_history_reloads_from_store(tracker, alice_state, bus, store, scheduler, clock):
    start(bus)
    bus.publish(Topic.SESSION_ENDED)

    other = SessionLifecycleTracker(alice_state, bus, store, scheduler, clock=clock)
    other.load_session_history()

    assert len(other.session_history) == 1


def test_shutdown_cancels_check_timer(tracker, scheduler):
    assert scheduler.pending() == ['idle-check']
    tracker.shutdown()
    assert scheduler.pending() == []
