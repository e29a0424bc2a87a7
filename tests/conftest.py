"""
Shared fixtures for mediaflow tests.
"""

import os
from typing import Callable, Generator

# ============================================================================
# Set test environment BEFORE any mediaflow imports
# ============================================================================
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STAGE_DELAY_SECONDS"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"

import mediaflow.core.config
mediaflow.core.config.get_settings.cache_clear()

import pytest
from faker import Faker
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from mediaflow.core.config import Settings
from mediaflow.engine import MediaEngine
from mediaflow.models.base import Base, init_db
from mediaflow.models.job import JobState
from mediaflow.schemas.job import JobSnapshot
from mediaflow.services.classifier import Classifier
from mediaflow.services.notifications import NotificationHub
from mediaflow.services.record_store import SqlRecordStore
from tests.fakes import FakeClassifier, FakeClock

fake = Faker()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine() -> Generator[Engine, None, None]:
    """Create in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(db_engine: Engine, fake_clock: FakeClock) -> SqlRecordStore:
    return SqlRecordStore(db_engine, clock=fake_clock)


# ============================================================================
# Identity Fixtures
# ============================================================================


@pytest.fixture
def owner_id() -> str:
    return fake.uuid4()


@pytest.fixture
def group_id() -> str:
    return fake.company().lower().replace(" ", "-")


@pytest.fixture
def job_snapshot(owner_id: str, group_id: str) -> JobSnapshot:
    """Unsaved job for the current owner."""
    return JobSnapshot(
        id=fake.uuid4(),
        owner_id=owner_id,
        group_id=group_id,
        media_ref=f"uploads/{owner_id}/{fake.file_name(extension='mp4')}",
        original_filename="holiday.mp4",
    )


@pytest.fixture
def submitted_job(store: SqlRecordStore, job_snapshot: JobSnapshot) -> JobSnapshot:
    return store.create(job_snapshot)


@pytest.fixture
def processing_job(store: SqlRecordStore, submitted_job: JobSnapshot) -> JobSnapshot:
    """Job left mid-pipeline, as after a crash."""
    return store.atomic_update(
        submitted_job.id,
        {"state": JobState.PROCESSING, "progress": 40},
    )


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def engine_settings() -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        stage_delay_seconds=0.5,
        watchdog_interval_seconds=30,
        watchdog_poll_seconds=1,
        shutdown_timeout_seconds=1,
        subscriber_buffer_size=50,
    )


@pytest.fixture
def hub(engine_settings: Settings) -> NotificationHub:
    return NotificationHub(engine_settings.subscriber_buffer_size)


@pytest.fixture
def make_engine(
    store: SqlRecordStore,
    fake_clock: FakeClock,
    engine_settings: Settings,
) -> Callable[..., MediaEngine]:
    """Factory for engines wired to the test store and clock."""

    def _make(classifier: Classifier | None = None, **overrides) -> MediaEngine:
        config = engine_settings.model_copy(update=overrides)
        return MediaEngine(
            store,
            classifier=classifier or FakeClassifier(),
            clock=fake_clock,
            config=config,
        )

    return _make
