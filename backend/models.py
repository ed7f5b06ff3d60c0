"""
SQLAlchemy ORM models for device profiles, test runs, results and schedules.
"""
import json
from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, Float, Index, ForeignKey
from database import Base
from schedule_calculator import utcnow


def _iso(value):
    return value.isoformat() + "Z" if value else None


class DeviceProfile(Base):
    """
    A simulated playback client's capabilities.
    Probes request transcodes constrained to these codecs and limits.
    """
    __tablename__ = "device_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    device_id = Column(String(100), nullable=False, unique=True)  # Sent to the server as X-Emby-Device-Id
    max_bitrate = Column(Integer, default=20000000, nullable=False)
    audio_codec = Column(String(20), default="aac", nullable=False)
    video_codec = Column(String(20), default="h264", nullable=False)
    max_width = Column(Integer, default=1920, nullable=False)
    max_height = Column(Integer, default=1080, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "device_id": self.device_id,
            "max_bitrate": self.max_bitrate,
            "audio_codec": self.audio_codec,
            "video_codec": self.video_codec,
            "max_width": self.max_width,
            "max_height": self.max_height,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<DeviceProfile(id={self.id}, name={self.name}, video={self.video_codec}, audio={self.audio_codec})>"


class TestRun(Base):
    """
    A batch of probes covering device profiles x a media scope.
    Status moves pending -> running -> (paused <-> running) -> completed/cancelled/failed.
    """
    __tablename__ = "test_runs"
    __test__ = False  # not a pytest test class

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    config = Column(Text, nullable=True)  # JSON: {devices, media_scope, test_config}
    total_tests = Column(Integer, default=0, nullable=False)
    completed_tests = Column(Integer, default=0, nullable=False)
    successful_tests = Column(Integer, default=0, nullable=False)
    failed_tests = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_test_runs_status", status),
    )

    def get_config(self) -> dict:
        """Parse the stored JSON run configuration."""
        if not self.config:
            return {}
        try:
            return json.loads(self.config)
        except (json.JSONDecodeError, TypeError):
            return {}

    def set_config(self, config: dict) -> None:
        self.config = json.dumps(config) if config else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "config": self.get_config(),
            "total_tests": self.total_tests,
            "completed_tests": self.completed_tests,
            "successful_tests": self.successful_tests,
            "failed_tests": self.failed_tests,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<TestRun(id={self.id}, status={self.status}, {self.completed_tests}/{self.total_tests})>"


class TestResult(Base):
    """
    Outcome of one probe. Append-only.
    """
    __tablename__ = "test_results"
    __test__ = False  # not a pytest test class

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(Integer, ForeignKey("test_runs.id"), nullable=True)  # NULL for ad-hoc tests
    item_id = Column(String(64), nullable=False)
    item_name = Column(String(500), nullable=True)
    path = Column(Text, nullable=True)
    device_id = Column(Integer, nullable=True)  # DeviceProfile.id
    format = Column(String(20), nullable=True)  # Source container
    duration = Column(Float, nullable=True)  # Elapsed seconds
    bytes_downloaded = Column(BigInteger, default=0, nullable=False)
    segments_downloaded = Column(Integer, default=0, nullable=False)
    errors = Column(Text, nullable=True)  # JSON list of error messages
    success = Column(Boolean, default=False, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_test_results_timestamp", timestamp.desc()),
        Index("idx_test_results_success", success),
        Index("idx_test_results_item_id", item_id),
        Index("idx_test_results_run_id", test_run_id),
    )

    def get_errors(self) -> list:
        if not self.errors:
            return []
        try:
            return json.loads(self.errors)
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "path": self.path,
            "device_id": self.device_id,
            "format": self.format,
            "duration": self.duration,
            "bytes_downloaded": self.bytes_downloaded,
            "segments_downloaded": self.segments_downloaded,
            "errors": self.get_errors(),
            "success": self.success,
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<TestResult(id={self.id}, item={self.item_id}, success={self.success})>"


class ScheduledRun(Base):
    """
    A recurring run definition polled by the run scheduler.
    next_run_at is the only trigger condition.
    """
    __tablename__ = "scheduled_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    frequency = Column(String(20), nullable=False)  # "daily", "weekly", "every6h", "every12h"
    day_of_week = Column(Integer, nullable=True)  # 0=Sunday .. 6=Saturday, weekly only
    time_of_day = Column(String(5), nullable=False)  # HH:MM
    device_ids = Column(Text, nullable=False, default="[]")  # JSON list of DeviceProfile ids
    library_ids = Column(Text, nullable=False, default="[]")  # JSON list of library ids
    media_scope = Column(String(20), nullable=False, default="all")  # "all" or "recent"
    media_days = Column(Integer, default=7, nullable=False)
    test_duration = Column(Integer, default=30, nullable=False)
    parallel_tests = Column(Integer, default=2, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_scheduled_runs_enabled", enabled),
        Index("idx_scheduled_runs_next_run", next_run_at),
    )

    def get_device_ids(self) -> list[int]:
        try:
            return json.loads(self.device_ids) if self.device_ids else []
        except (json.JSONDecodeError, TypeError):
            return []

    def get_library_ids(self) -> list[str]:
        try:
            return json.loads(self.library_ids) if self.library_ids else []
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "frequency": self.frequency,
            "day_of_week": self.day_of_week,
            "time_of_day": self.time_of_day,
            "device_ids": self.get_device_ids(),
            "library_ids": self.get_library_ids(),
            "media_scope": self.media_scope,
            "media_days": self.media_days,
            "test_duration": self.test_duration,
            "parallel_tests": self.parallel_tests,
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ScheduledRun(id={self.id}, name={self.name}, frequency={self.frequency})>"
