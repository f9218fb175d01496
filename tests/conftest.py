import random

import pytest

from ingest_engine.config import EngineSettings
from ingest_engine.database.migrate import ensure_control_tables
from ingest_engine.database.sqlite_connection import SQLiteWorkbookStore
from ingest_engine.ingestion.retry import RetryExecutor
from ingest_engine.ingestion.tracker import ProcessTracker
from ingest_engine.ingestion.worker import RuleEngine
from tests.helpers import FakeMessageStore


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        workbook_dir=str(tmp_path / 'workbooks'),
        process_state_db=str(tmp_path / 'state' / 'process_state.db'),
        retry_base_delay=0.0,
        retry_jitter=0.0,
        verify_seed=42,
        batch_size=2,
    )


@pytest.fixture
def store(settings) -> SQLiteWorkbookStore:
    return SQLiteWorkbookStore(settings.workbook_dir)


@pytest.fixture
def control(store, settings):
    """The control workbook with its rules and sink tables in place."""
    workbook = store.open(settings.default_workbook_id, create=True)
    ensure_control_tables(workbook, settings)
    return workbook


@pytest.fixture
def workbook(store):
    """A scratch workbook with no tables."""
    return store.open('scratch-workbook'.ljust(44, '0'), create=True)


@pytest.fixture
def tracker(settings) -> ProcessTracker:
    return ProcessTracker.from_path(settings.process_state_db)


@pytest.fixture
def message_store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry(sleeps) -> RetryExecutor:
    return RetryExecutor(max_attempts=3, base_delay=1.0, jitter=0.0, sleep=sleeps.append)


@pytest.fixture
def engine(settings, store, control, tracker, message_store, sleeps) -> RuleEngine:
    return RuleEngine(
        settings,
        store,
        message_store=message_store,
        tracker=tracker,
        sleep=sleeps.append,
        rng=random.Random(7),
    )
