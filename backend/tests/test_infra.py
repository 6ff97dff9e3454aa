import asyncio
import json

import pytest

from experiment_core.infra import (
    AsyncioScheduler,
    EventBus,
    InMemoryStore,
    JsonFileStore,
    StoreError,
    StoreFullError,
    Topic,
    entry_size,
)

from fakes import ManualClock, ManualScheduler


# ----------------------------------------------------------------------
# EventBus
# ----------------------------------------------------------------------

def test_handlers_run_in_subscription_order():
    bus = EventBus()
    calls = []
    bus.subscribe(Topic.ACTIVITY, lambda p: calls.append('first'))
    bus.subscribe(Topic.ACTIVITY, lambda p: calls.append('second'))

    bus.publish(Topic.ACTIVITY)

    assert calls == ['first', 'second']


def test_nested_publish_is_dispatched_after_current_event():
    bus = EventBus()
    calls = []

    def on_timeout(payload):
        calls.append('timeout-1')
        bus.publish(Topic.FORCE_END_SESSION, {'reason': 'timeout'})
        calls.append('timeout-1-done')

    bus.subscribe(Topic.TIMEOUT, on_timeout)
    bus.subscribe(Topic.TIMEOUT, lambda p: calls.append('timeout-2'))
    bus.subscribe(Topic.FORCE_END_SESSION, lambda p: calls.append(f"force:{p['reason']}"))

    bus.publish(Topic.TIMEOUT, {'session_time_ms': 1})

    assert calls == ['timeout-1', 'timeout-1-done', 'timeout-2', 'force:timeout']


def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    calls = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.subscribe(Topic.IDLE, broken)
    bus.subscribe(Topic.IDLE, lambda p: calls.append(p['idle_time_ms']))

    bus.publish(Topic.IDLE, {'idle_time_ms': 301000})

    assert calls == [301000]


def test_wildcard_and_unsubscribe():
    bus = EventBus()
    seen = []
    handler = lambda p: seen.append('direct')  # noqa: E731
    bus.subscribe(Topic.ACTIVITY, handler)
    bus.subscribe_all(lambda topic, p: seen.append(topic.value))

    bus.publish(Topic.ACTIVITY)
    assert bus.unsubscribe(Topic.ACTIVITY, handler) is True
    assert bus.unsubscribe(Topic.ACTIVITY, handler) is False
    bus.publish(Topic.ACTIVITY)

    assert seen == ['direct', 'activity', 'activity']
    assert bus.subscriber_count(Topic.ACTIVITY) == 0


# ----------------------------------------------------------------------
# Stores
# ----------------------------------------------------------------------

def test_in_memory_store_basic_operations():
    store = InMemoryStore()
    store.set('a', '1')
    store.set('b', '2')
    store.remove('a')
    store.remove('missing')

    assert store.get('a') is None
    assert store.get('b') == '2'
    assert store.keys() == ['b']
    assert len(store) == 1


def test_in_memory_store_capacity():
    store = InMemoryStore(capacity_bytes=entry_size('key', 'x' * 10))
    store.set('key', 'x' * 10)

    with pytest.raises(StoreFullError) as excinfo:
        store.set('other', 'y')

    assert excinfo.value.key == 'other'
    assert store.get('other') is None


def test_unavailable_store():
    store = InMemoryStore(available=False)

    assert store.is_available() is False
    with pytest.raises(StoreError):
        store.keys()


def test_json_file_store_persists_across_instances(tmp_path):
    path = tmp_path / 'nested' / 'store.json'
    store = JsonFileStore(str(path))
    store.set('experiment_alice', '{"x": 1}')

    reopened = JsonFileStore(str(path))

    assert reopened.get('experiment_alice') == '{"x": 1}'
    assert json.loads(path.read_text(encoding='utf-8')) == {'experiment_alice': '{"x": 1}'}
    assert reopened.is_available() is True
    assert reopened.keys() == ['experiment_alice']


def test_json_file_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / 'store.json'
    path.write_text('not json', encoding='utf-8')

    with pytest.raises(StoreError):
        JsonFileStore(str(path))


def test_entry_size_is_two_bytes_per_char():
    assert entry_size('ab', 'cde') == 10


# ----------------------------------------------------------------------
# Schedulers
# ----------------------------------------------------------------------

def test_manual_scheduler_runs_due_timers_in_order():
    clock = ManualClock()
    scheduler = ManualScheduler(clock)
    fired = []

    scheduler.call_every(30, lambda: fired.append(('check', clock.now_ms())), name='check')
    scheduler.call_later(45, lambda: fired.append(('once', clock.now_ms())), name='once')
    start = clock.now_ms()

    scheduler.advance(60)

    assert [name for name, _ in fired] == ['check', 'once', 'check']
    assert [ts - start for _, ts in fired] == [30000, 45000, 60000]
    assert scheduler.pending() == ['check']


def test_asyncio_scheduler_fires_and_cancels():
    loop = asyncio.new_event_loop()
    try:
        scheduler = AsyncioScheduler(loop)
        fired = []

        scheduler.call_later(0.01, lambda: fired.append('later'))
        cancelled = scheduler.call_later(0.01, lambda: fired.append('cancelled'))
        ticker = scheduler.call_every(0.01, lambda: fired.append('tick'))
        scheduler.cancel(cancelled)

        loop.run_until_complete(asyncio.sleep(0.05))
        scheduler.cancel(ticker)
        count = fired.count('tick')
        loop.run_until_complete(asyncio.sleep(0.03))

        assert 'later' in fired
        assert 'cancelled' not in fired
        assert count >= 1
        assert fired.count('tick') == count
    finally:
        loop.close()


def test_asyncio_scheduler_logs_callback_errors():
    loop = asyncio.new_event_loop()
    try:
        scheduler = AsyncioScheduler(loop)
        fired = []

        def broken():
            fired.append('broken')
            raise ValueError("bad")

        scheduler.call_every(0.01, broken, name='broken')
        loop.run_until_complete(asyncio.sleep(0.035))
        scheduler.cancel_all()

        assert len(fired) >= 2
    finally:
        loop.close()
