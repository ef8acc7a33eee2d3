import tempfile
from pathlib import Path

import pytest

from batch_relay.driver import (
    InlineRescheduler,
    JobDriver,
    RecordingNotifier,
    SQLiteJobStore,
    SQLitePassQueue,
)
from batch_relay.remote import SimulatedOperations


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_relay.db")


@pytest.fixture
def store(temp_db):
    """Create SQLiteJobStore instance."""
    job_store = SQLiteJobStore(temp_db)
    yield job_store
    job_store.close()


@pytest.fixture
def pass_queue(store):
    """Create SQLitePassQueue sharing the store's database."""
    return SQLitePassQueue(store)


@pytest.fixture
def operations():
    return SimulatedOperations()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rescheduler():
    return InlineRescheduler()


@pytest.fixture
def driver(store, operations, rescheduler, notifier):
    """Driver wired to in-memory collaborators and a temp store."""
    return JobDriver(
        store=store,
        operations=operations,
        rescheduler=rescheduler,
        notifiers={"recording": notifier},
    )
