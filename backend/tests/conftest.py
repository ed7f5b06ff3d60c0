"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/jellyprobe_test_config"

# Ensure test config directory exists
Path("/tmp/jellyprobe_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import DeviceProfile, TestRun, TestResult, ScheduledRun  # noqa: F401 - registers tables
from config import ProbeSettings
from run_store import RunStore


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the in-memory engine."""
    # expire_on_commit=False allows accessing object attributes after commit/close
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def store(session_factory):
    """RunStore backed by the in-memory database."""
    return RunStore(session_factory)


@pytest.fixture
def probe_settings():
    """Settings with a fake server and the stagger window at its minimum."""
    return ProbeSettings(
        jellyfin_url="http://jellyfin.test",
        api_key="test-api-key",
        test_duration=1,
        max_parallel_tests=2,
        spread_start_over_ms=500,
        enqueue_batch_size=50,
        catalog_page_size=500,
    )


@pytest.fixture(scope="function")
async def async_client(session_factory, probe_settings):
    """
    Create an async test client for the FastAPI app.

    The lifespan is not run; the database module and the engine singletons
    are pointed at in-memory fakes instead.
    """
    from httpx import AsyncClient, ASGITransport
    import database
    from events import NullEventSink
    from tests.fixtures.mock_media_server import FakeMediaServer, FakeProbe
    from main import app
    from test_queue import TestQueue
    from test_run_manager import TestRunManager, set_manager
    from run_scheduler import RunScheduler, set_scheduler

    original_session_local = database._SessionLocal
    database._SessionLocal = session_factory

    server = FakeMediaServer()
    queue = TestQueue(FakeProbe(), parallelism=2, test_duration=1, spread_start_over_ms=500)
    manager = TestRunManager(RunStore(session_factory), queue, server, events=NullEventSink(), settings=probe_settings)
    set_manager(manager)
    set_scheduler(RunScheduler(manager.store, manager, settings=probe_settings))

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            client.media_server = server
            client.manager = manager
            yield client
    finally:
        await queue.cancel()
        set_manager(None)
        set_scheduler(None)
        database._SessionLocal = original_session_local
