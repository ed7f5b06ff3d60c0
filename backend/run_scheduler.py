"""
Recurrence scheduler.

Polls enabled ScheduledRun rows on a fixed interval and, when one is due,
creates and starts a test run for it through the run manager.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from config import ProbeSettings, get_settings
from errors import ProbeError
from events import EventSink, EventType, NullEventSink
from run_store import RunStore
from schedule_calculator import FIXED_INTERVALS, compute_next_run_utc, utcnow
from test_run_manager import TestRunManager

logger = logging.getLogger(__name__)

DEFAULT_PARALLEL_TESTS = 2
DEFAULT_TEST_DURATION = 30
DEFAULT_MEDIA_DAYS = 7


class RunScheduler:
    """Background loop that fires scheduled test runs."""

    def __init__(
        self,
        store: RunStore,
        manager: TestRunManager,
        events: Optional[EventSink] = None,
        settings: Optional[ProbeSettings] = None,
        check_interval: Optional[int] = None,
    ):
        self.store = store
        self.manager = manager
        self.events = events or NullEventSink()
        self.settings = settings or get_settings()
        self.check_interval = check_interval or self.settings.scheduler_interval
        self._running = False
        self._ticking = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start polling. Runs one tick immediately."""
        if self._running:
            logger.warning("[SCHEDULER] Already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("[SCHEDULER] Started (interval=%ss)", self.check_interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SCHEDULER] Stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.exception("[SCHEDULER] Error in scheduler loop: %s", e)

            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break

    def next_run_for(self, schedule, now: Optional[datetime] = None) -> datetime:
        return compute_next_run_utc(
            schedule.frequency,
            schedule.day_of_week,
            schedule.time_of_day,
            timezone=self.settings.schedule_timezone,
            now_utc=now,
        )

    def next_run_after(self, schedule, now: datetime) -> datetime:
        """
        Next fire time strictly after `now`.

        For the 6h/12h frequencies the calculator adds one interval to
        today's anchor time, which can still be in the past late in the day;
        keep stepping so an elapsed schedule fires once, not on every tick.
        """
        next_run = self.next_run_for(schedule, now)
        step = FIXED_INTERVALS.get(schedule.frequency)
        while step and next_run <= now:
            next_run += step
        return next_run

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        Check every enabled schedule once.

        A schedule without next_run_at gets one computed and is not fired on
        this tick. A due schedule is always moved to its next fire time, even
        when starting its run failed. Returns the number of schedules executed.
        """
        if self._ticking:
            return 0
        self._ticking = True
        executed = 0
        try:
            now = now or utcnow()
            for schedule in self.store.get_enabled_schedules():
                try:
                    if schedule.next_run_at is None:
                        self.store.update_schedule(schedule.id, next_run_at=self.next_run_after(schedule, now))
                        continue
                    if now < schedule.next_run_at:
                        continue

                    try:
                        if await self.execute_schedule(schedule) is not None:
                            executed += 1
                    except Exception as e:
                        logger.exception("[SCHEDULER] Schedule %s failed to start: %s", schedule.id, e)

                    self.store.update_schedule(
                        schedule.id,
                        last_run_at=now,
                        next_run_at=self.next_run_after(schedule, now),
                    )
                except ValueError as e:
                    logger.error("[SCHEDULER] Invalid schedule %s: %s", schedule.id, e)
                except Exception as e:
                    logger.exception("[SCHEDULER] Error checking schedule %s: %s", schedule.id, e)
        finally:
            self._ticking = False
        return executed

    async def execute_schedule(self, schedule) -> Optional[int]:
        """Create and start a run for a schedule. Returns the run id, or None if nothing started."""
        logger.info("[SCHEDULER] Executing schedule: %s", schedule.name)

        device_ids = [d.id for d in self.store.get_devices_by_ids(schedule.get_device_ids())]
        if not device_ids:
            logger.warning("[SCHEDULER] No matching devices for schedule %s", schedule.id)
            return None

        media_scope = {
            "type": "recent" if schedule.media_scope == "recent" else "all",
            "library_ids": schedule.get_library_ids(),
            "days": schedule.media_days or DEFAULT_MEDIA_DAYS,
        }
        config = {
            "device_ids": device_ids,
            "media_scope": media_scope,
            "test_config": {"duration": schedule.test_duration or DEFAULT_TEST_DURATION},
        }

        try:
            run = self.manager.create_run(config)
            await self.manager.start_run(run.id)
            self.manager.queue.set_parallelism(schedule.parallel_tests or DEFAULT_PARALLEL_TESTS)
        except ProbeError as e:
            logger.error("[SCHEDULER] Failed to execute schedule %s: %s", schedule.id, e)
            return None

        logger.info("[SCHEDULER] Created test run %s for schedule %s", run.id, schedule.name)
        self.events.emit(EventType.SCHEDULED_RUN_STARTED, {"schedule_id": schedule.id, "test_run_id": run.id})
        return run.id


# Global scheduler instance
_scheduler: Optional[RunScheduler] = None


def get_scheduler() -> Optional[RunScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


def set_scheduler(scheduler: Optional[RunScheduler]) -> None:
    """Set the global scheduler instance."""
    global _scheduler
    _scheduler = scheduler
