"""
SQLite database setup for runs, test results, devices and schedules.
Uses SQLAlchemy ORM with a synchronous engine.
"""
import logging
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR, ENVIRONMENT
from schedule_calculator import utcnow

logger = logging.getLogger(__name__)

# Database file location
PROBE_DB_FILE = CONFIG_DIR / ENVIRONMENT.database_file

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the SQLite database URL."""
    return f"sqlite:///{PROBE_DB_FILE}"


def init_db(database_url: str = None) -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)

        database_url = database_url or get_database_url()
        logger.info(f"Initializing probe database at {database_url}")

        _engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,  # Set to True for SQL debugging
        )

        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine, expire_on_commit=False)

        # Import models to register them with Base
        from models import DeviceProfile, TestRun, TestResult, ScheduledRun  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.debug("Database tables created/verified")

        _recover_interrupted_runs(_engine)

        logger.info("Probe database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


def _recover_interrupted_runs(engine) -> None:
    """Fail runs left running or paused by a previous process so they never stall."""
    with engine.connect() as conn:
        try:
            result = conn.execute(
                text(
                    "UPDATE test_runs SET status = 'failed', completed_at = :now "
                    "WHERE status IN ('running', 'paused')"
                ),
                {"now": utcnow()},
            )
            if result.rowcount > 0:
                logger.warning(f"Marked {result.rowcount} interrupted test runs as failed")
            conn.commit()
        except Exception as e:
            logger.error(f"Interrupted run recovery failed: {e}")


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    return _engine
