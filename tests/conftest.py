"""
Shared test fixtures for Code Timeline tests.
"""

import pytest

from code_timeline.shared.metrics import MetricsRegistry, TimelineMetricsCollector
from code_timeline.server.timeline import (
    CheckpointStore,
    EventLog,
    ReconstructionEngine,
    StoreConfig,
    TimelineDatabase,
)

SESSION_START = 1_000


@pytest.fixture
def registry():
    return MetricsRegistry()


@pytest.fixture
def metrics(registry):
    return TimelineMetricsCollector(registry=registry)


@pytest.fixture
def store_config(tmp_path):
    return StoreConfig(db_path=str(tmp_path / "timeline.db"))


@pytest.fixture
def database(store_config, metrics):
    db = TimelineDatabase(store_config, metrics=metrics)
    yield db
    db.close()


@pytest.fixture
def session(database):
    return database.start_session("/work/project", name="test", start_time=SESSION_START)


@pytest.fixture
def event_log(database, session):
    return EventLog(database, session)


@pytest.fixture
def checkpoint_store(database, session):
    return CheckpointStore(database, session, max_content_bytes=database.config.max_content_bytes)


@pytest.fixture
def reconstruction(checkpoint_store):
    return ReconstructionEngine(checkpoint_store)


@pytest.fixture
def sample_history():
    """(timestamp, content) captures of one file, oldest first."""
    return [
        (1_000, "def main():\n    pass\n"),
        (2_000, "def main():\n    print('hello')\n"),
        (3_000, "import sys\n\ndef main():\n    print('hello')\n"),
        (4_000, "import sys\n\ndef main():\n    print('hello', sys.argv)\n"),
        (5_000, "import sys\n\n\ndef main():\n    print('hello', sys.argv)\n    return 0\n"),
    ]
