"""
Storage layer for device profiles, test runs, test results and schedules.

The run manager and scheduler only need create / read / update-by-id /
append operations; RunStore provides them on top of SQLAlchemy sessions.
"""
import json
import logging
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database import get_session
from models import DeviceProfile, TestRun, TestResult, ScheduledRun
from schedule_calculator import utcnow

logger = logging.getLogger(__name__)

ACTIVE_RUN_STATUSES = ("running", "paused")

_RUN_FIELDS = {
    "name", "status", "total_tests", "completed_tests", "successful_tests",
    "failed_tests", "error", "started_at", "completed_at",
}
_DEVICE_FIELDS = {
    "name", "device_id", "max_bitrate", "audio_codec", "video_codec", "max_width", "max_height",
}
_SCHEDULE_FIELDS = {
    "name", "enabled", "frequency", "day_of_week", "time_of_day", "media_scope",
    "media_days", "test_duration", "parallel_tests", "last_run_at", "next_run_at",
}


class RunStore:
    """Session-per-call repository over the probe database."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or get_session

    def _session(self) -> Session:
        return self._session_factory()

    # -------------------------------------------------------------------------
    # Device profiles
    # -------------------------------------------------------------------------

    def get_all_devices(self) -> list[DeviceProfile]:
        session = self._session()
        try:
            return session.query(DeviceProfile).order_by(DeviceProfile.name).all()
        finally:
            session.close()

    def get_device(self, device_id: int) -> Optional[DeviceProfile]:
        session = self._session()
        try:
            return session.get(DeviceProfile, device_id)
        finally:
            session.close()

    def get_devices_by_ids(self, device_ids: list[int]) -> list[DeviceProfile]:
        if not device_ids:
            return []
        session = self._session()
        try:
            devices = session.query(DeviceProfile).filter(DeviceProfile.id.in_(device_ids)).all()
            by_id = {d.id: d for d in devices}
            return [by_id[i] for i in device_ids if i in by_id]
        finally:
            session.close()

    def add_device(self, **fields) -> DeviceProfile:
        session = self._session()
        try:
            device = DeviceProfile(**{k: v for k, v in fields.items() if k in _DEVICE_FIELDS})
            session.add(device)
            session.commit()
            session.refresh(device)
            logger.info(f"Added device profile {device.id} ({device.name})")
            return device
        finally:
            session.close()

    def update_device(self, device_id: int, **fields) -> Optional[DeviceProfile]:
        session = self._session()
        try:
            device = session.get(DeviceProfile, device_id)
            if not device:
                return None
            for key, value in fields.items():
                if key in _DEVICE_FIELDS:
                    setattr(device, key, value)
            session.commit()
            session.refresh(device)
            return device
        finally:
            session.close()

    def delete_device(self, device_id: int) -> bool:
        session = self._session()
        try:
            deleted = session.query(DeviceProfile).filter(DeviceProfile.id == device_id).delete()
            session.commit()
            return deleted > 0
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Test runs
    # -------------------------------------------------------------------------

    def create_run(self, name: str, config: dict, total_tests: int = 0) -> TestRun:
        session = self._session()
        try:
            run = TestRun(name=name, status="pending", total_tests=total_tests)
            run.set_config(config)
            session.add(run)
            session.commit()
            session.refresh(run)
            return run
        finally:
            session.close()

    def get_run(self, run_id: int) -> Optional[TestRun]:
        session = self._session()
        try:
            return session.get(TestRun, run_id)
        finally:
            session.close()

    def get_all_runs(self, limit: int = 50) -> list[TestRun]:
        session = self._session()
        try:
            return (
                session.query(TestRun)
                .order_by(TestRun.created_at.desc(), TestRun.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            session.close()

    def get_active_run(self) -> Optional[TestRun]:
        session = self._session()
        try:
            return (
                session.query(TestRun)
                .filter(TestRun.status.in_(ACTIVE_RUN_STATUSES))
                .order_by(TestRun.created_at.desc(), TestRun.id.desc())
                .first()
            )
        finally:
            session.close()

    def get_active_runs(self) -> list[TestRun]:
        session = self._session()
        try:
            return (
                session.query(TestRun)
                .filter(TestRun.status.in_(ACTIVE_RUN_STATUSES))
                .order_by(TestRun.id)
                .all()
            )
        finally:
            session.close()

    def update_run(self, run_id: int, **fields) -> Optional[TestRun]:
        session = self._session()
        try:
            run = session.get(TestRun, run_id)
            if not run:
                return None
            for key, value in fields.items():
                if key in _RUN_FIELDS:
                    setattr(run, key, value)
            session.commit()
            session.refresh(run)
            return run
        finally:
            session.close()

    def record_run_completion(self, run_id: int, success: bool) -> Optional[TestRun]:
        """
        Count one finished test against a run and return the updated row.

        Read-modify-write happens inside a single session with no await in
        between, so concurrent completions on the event loop cannot interleave.
        """
        session = self._session()
        try:
            run = session.get(TestRun, run_id)
            if not run:
                return None
            run.completed_tests += 1
            if success:
                run.successful_tests += 1
            else:
                run.failed_tests += 1
            session.commit()
            session.refresh(run)
            return run
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Test results
    # -------------------------------------------------------------------------

    def add_test_result(self, result) -> Optional[TestResult]:
        """Append a ProbeResult. Returns None if the write fails."""
        try:
            session = self._session()
            try:
                row = TestResult(
                    test_run_id=result.test_run_id,
                    item_id=result.item_id,
                    item_name=result.item_name,
                    path=result.path,
                    device_id=result.device_id,
                    format=result.format,
                    duration=result.duration,
                    bytes_downloaded=result.bytes_downloaded,
                    segments_downloaded=result.segments_downloaded,
                    errors=json.dumps(list(result.errors)),
                    success=result.success,
                    timestamp=utcnow(),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return row
            finally:
                session.close()
        except Exception as e:
            logger.error(f"Failed to save test result for item {result.item_id}: {e}")
            return None

    def get_run_results(self, run_id: int) -> list[TestResult]:
        session = self._session()
        try:
            return (
                session.query(TestResult)
                .filter(TestResult.test_run_id == run_id)
                .order_by(TestResult.timestamp.asc(), TestResult.id.asc())
                .all()
            )
        finally:
            session.close()

    def get_test_history(self, limit: int = 100, offset: int = 0) -> list[TestResult]:
        session = self._session()
        try:
            return (
                session.query(TestResult)
                .order_by(TestResult.timestamp.desc(), TestResult.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        finally:
            session.close()

    def get_test_stats(self) -> dict:
        session = self._session()
        try:
            total = session.query(func.count(TestResult.id)).scalar() or 0
            successful = session.query(func.count(TestResult.id)).filter(TestResult.success == True).scalar() or 0  # noqa: E712
            return {
                "total": total,
                "successful": successful,
                "failed": total - successful,
                "success_rate": round(successful / total * 100, 1) if total else 0.0,
            }
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Scheduled runs
    # -------------------------------------------------------------------------

    def create_schedule(self, device_ids: list[int], library_ids: list[str], **fields) -> ScheduledRun:
        session = self._session()
        try:
            schedule = ScheduledRun(
                device_ids=json.dumps(list(device_ids)),
                library_ids=json.dumps(list(library_ids)),
                **{k: v for k, v in fields.items() if k in _SCHEDULE_FIELDS},
            )
            session.add(schedule)
            session.commit()
            session.refresh(schedule)
            return schedule
        finally:
            session.close()

    def get_schedule(self, schedule_id: int) -> Optional[ScheduledRun]:
        session = self._session()
        try:
            return session.get(ScheduledRun, schedule_id)
        finally:
            session.close()

    def get_all_schedules(self) -> list[ScheduledRun]:
        session = self._session()
        try:
            return session.query(ScheduledRun).order_by(ScheduledRun.created_at.desc()).all()
        finally:
            session.close()

    def get_enabled_schedules(self) -> list[ScheduledRun]:
        session = self._session()
        try:
            return session.query(ScheduledRun).filter(ScheduledRun.enabled == True).all()  # noqa: E712
        finally:
            session.close()

    def update_schedule(self, schedule_id: int, **fields) -> Optional[ScheduledRun]:
        session = self._session()
        try:
            schedule = session.get(ScheduledRun, schedule_id)
            if not schedule:
                return None
            for key, value in fields.items():
                if key in ("device_ids", "library_ids"):
                    setattr(schedule, key, json.dumps(list(value)))
                elif key in _SCHEDULE_FIELDS:
                    setattr(schedule, key, value)
            session.commit()
            session.refresh(schedule)
            return schedule
        finally:
            session.close()

    def delete_schedule(self, schedule_id: int) -> bool:
        session = self._session()
        try:
            deleted = session.query(ScheduledRun).filter(ScheduledRun.id == schedule_id).delete()
            session.commit()
            return deleted > 0
        finally:
            session.close()
