import pytest

from ami_console.config import ClassificationConfig
from ami_console.core.audit import AuditLog
from ami_console.core.classifier import ClassificationRules
from ami_console.core.event_applier import EventApplier
from ami_console.core.state_store import StateStore
from helpers import FakeClock, ScriptedSession


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return StateStore(clock=clock, tombstone_size=64)


@pytest.fixture
def audit():
    return AuditLog(maxlen=100)


@pytest.fixture
def applier(store, audit):
    return EventApplier(store, audit, wall_clock=lambda: 1_700_000_000.0)


@pytest.fixture
def rules():
    return ClassificationRules.from_config(ClassificationConfig())


@pytest.fixture
def session():
    return ScriptedSession()


@pytest.fixture
def store_factory(clock):
    """Fresh (store, applier) pairs sharing the test clock."""
    def factory():
        fresh = StateStore(clock=clock)
        return fresh, EventApplier(fresh, AuditLog())
    return factory
