from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import os
import logging
from pathlib import Path

# Set up logging
logger = logging.getLogger(__name__)


class EnvironmentSettings(BaseSettings):
    """Process-level settings read from the environment or a .env file."""
    config_dir: str = "/config"
    database_file: str = "jellyprobe.db"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


ENVIRONMENT = EnvironmentSettings()

# Config file location
CONFIG_DIR = Path(ENVIRONMENT.config_dir)
CONFIG_FILE = CONFIG_DIR / "settings.json"

# Bounds for the worker pool parallelism
MIN_PARALLEL_TESTS = 1
MAX_PARALLEL_TESTS = 10


class ProbeSettings(BaseModel):
    """User-configurable media server connection and probe settings."""
    jellyfin_url: str = ""
    api_key: str = ""
    # Seconds of HLS playback each probe downloads
    test_duration: int = 30
    # Number of probes allowed to run (or be scheduled to start) at once (1-10)
    max_parallel_tests: int = 1
    # Window in milliseconds over which a batch of starts is spread.
    # 0 means derive the window from test_duration.
    spread_start_over_ms: int = 0
    # Tests enqueued per batch while a run's scope is still resolving
    enqueue_batch_size: int = 50
    # Page size used when paginating a library for "all" scopes
    catalog_page_size: int = 500
    # Seconds between recurrence scheduler ticks
    scheduler_interval: int = 30
    # IANA timezone that schedule times of day are interpreted in
    schedule_timezone: str = "UTC"
    # Timeout in seconds for API calls (session negotiation, catalog)
    request_timeout: int = 30
    # Timeout in seconds for playlist and segment downloads
    segment_timeout: int = 15
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"

    def is_configured(self) -> bool:
        return bool(self.jellyfin_url and self.api_key)


# In-memory cache of settings
_cached_settings: ProbeSettings | None = None

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def ensure_config_dir():
    """Create the config directory if it is missing."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def _read_settings_file() -> ProbeSettings | None:
    if not CONFIG_FILE.exists():
        logger.info(f"No probe settings at {CONFIG_FILE}, starting unconfigured")
        return None
    try:
        return ProbeSettings(**json.loads(CONFIG_FILE.read_text()))
    except (OSError, ValueError, TypeError) as e:
        logger.error(f"Ignoring unreadable probe settings in {CONFIG_FILE}: {e}")
        return None


def load_settings() -> ProbeSettings:
    """Return the probe settings, reading the JSON file on first use."""
    global _cached_settings

    if _cached_settings is None:
        _cached_settings = _read_settings_file() or ProbeSettings()
        logger.info(
            f"Probe settings ready (server configured: {_cached_settings.is_configured()}, "
            f"parallel tests: {_cached_settings.max_parallel_tests})"
        )
    return _cached_settings


def save_settings(settings: ProbeSettings) -> None:
    """Persist settings as JSON and make them the cached copy."""
    global _cached_settings

    ensure_config_dir()
    try:
        CONFIG_FILE.write_text(json.dumps(settings.model_dump(), indent=2))
    except OSError as e:
        logger.error(f"Could not write probe settings to {CONFIG_FILE}: {e}")
        raise
    _cached_settings = settings
    logger.info(f"Probe settings written to {CONFIG_FILE}")


def get_settings() -> ProbeSettings:
    """Current settings (cached)."""
    return load_settings()


def clear_settings_cache() -> None:
    """Drop the cached settings so the next read goes to disk."""
    global _cached_settings
    _cached_settings = None


def clamp_parallelism(value: int) -> int:
    """Clamp a requested parallelism to the supported range."""
    return max(MIN_PARALLEL_TESTS, min(MAX_PARALLEL_TESTS, int(value)))


def get_log_level_from_env() -> str:
    """LOG_LEVEL from the environment, INFO when unset."""
    return os.environ.get("LOG_LEVEL", "INFO").upper()


def set_log_level(level: str) -> None:
    """Apply a log level to the root logger and every logger created so far."""
    name = level.upper()
    if name not in LOG_LEVELS:
        logger.warning(f"Unknown log level '{level}', falling back to INFO")
        name = "INFO"

    numeric = getattr(logging, name)
    logging.getLogger().setLevel(numeric)
    for existing in list(logging.root.manager.loggerDict):
        logging.getLogger(existing).setLevel(numeric)
    logger.info(f"Backend log level is now {name}")
