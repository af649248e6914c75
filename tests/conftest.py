"""
Shared fixtures: in-memory SQLite store, fixed clock, fresh metrics.
"""
import pytest

from tests.helpers import FakeClock, at


@pytest.fixture
def clock():
    return FakeClock(at(12, 7))


@pytest.fixture
def store():
    from sitepilot.core.memory.db import create_db_engine, create_session_factory, init_db
    from sitepilot.core.scheduler.storage import SqlAutomationStore

    engine = create_db_engine("sqlite://", echo=False)
    init_db(engine)
    yield SqlAutomationStore(create_session_factory(engine))
    engine.dispose()


@pytest.fixture(autouse=True)
def fresh_metrics():
    from sitepilot.core.observability.metrics import get_metrics

    get_metrics().reset()
    yield get_metrics()
    get_metrics().reset()
