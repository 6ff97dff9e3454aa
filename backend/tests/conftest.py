import pytest

from experiment_core import ExperimentConfig, ExperimentCoordinator
from experiment_core.experiment import ExperimentManager, ExperimentState
from experiment_core.infra import EventBus, InMemoryStore
from experiment_core.session import SessionLifecycleTracker

from fakes import ManualClock, ManualScheduler


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def state():
    return ExperimentState()


@pytest.fixture
def tracker(state, bus, store, scheduler, clock):
    tracker = SessionLifecycleTracker(state, bus, store, scheduler, clock=clock)
    tracker.initialize()
    yield tracker
    tracker.shutdown()


@pytest.fixture
def manager(state, store, tracker, clock):
    return ExperimentManager(state, store, tracker.assign_order, clock=clock)


@pytest.fixture
def coordinator(store, scheduler, clock):
    coordinator = ExperimentCoordinator(
        config=ExperimentConfig(),
        store=store,
        scheduler=scheduler,
        clock=clock,
    )
    coordinator.initialize()
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def alice(coordinator):
    coordinator.initialize_user('alice')
    return coordinator
