"""
Schedules router: CRUD for recurring test runs and "run now".
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, field_validator

from run_scheduler import get_scheduler
from run_store import RunStore
from schedule_calculator import compute_next_run_utc, describe_schedule, format_relative_time, parse_time_of_day
from config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/schedules", tags=["Schedules"])


class ScheduleRequest(BaseModel):
    name: str
    enabled: bool = True
    frequency: Literal["daily", "weekly", "every12h", "every6h"]
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    time_of_day: str = "02:00"
    device_ids: list[int] = []
    library_ids: list[str] = []
    media_scope: Literal["all", "recent"] = "all"
    media_days: int = Field(default=7, ge=1)
    test_duration: int = Field(default=30, ge=1, le=600)
    parallel_tests: int = Field(default=2, ge=1, le=10)

    @field_validator("time_of_day")
    @classmethod
    def validate_time_of_day(cls, value: str) -> str:
        try:
            parse_time_of_day(value)
        except (ValueError, AttributeError):
            raise ValueError("time_of_day must be HH:MM")
        return value


def _schedule_response(schedule) -> dict:
    data = schedule.to_dict()
    data["description"] = describe_schedule(schedule.frequency, schedule.day_of_week, schedule.time_of_day)
    data["next_run_relative"] = format_relative_time(schedule.next_run_at)
    return data


def _next_run(request: ScheduleRequest):
    return compute_next_run_utc(
        request.frequency,
        request.day_of_week,
        request.time_of_day,
        timezone=get_settings().schedule_timezone,
    )


@router.get("")
async def list_schedules():
    return [_schedule_response(s) for s in RunStore().get_all_schedules()]


@router.post("")
async def create_schedule(request: ScheduleRequest):
    fields = request.model_dump(exclude={"device_ids", "library_ids"})
    schedule = RunStore().create_schedule(
        request.device_ids,
        request.library_ids,
        next_run_at=_next_run(request),
        **fields,
    )
    logger.info("[SCHEDULER] Created schedule %s (%s)", schedule.id, schedule.name)
    return _schedule_response(schedule)


@router.get("/{schedule_id}")
async def get_schedule(schedule_id: int):
    schedule = RunStore().get_schedule(schedule_id)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return _schedule_response(schedule)


@router.put("/{schedule_id}")
async def update_schedule(schedule_id: int, request: ScheduleRequest):
    schedule = RunStore().update_schedule(
        schedule_id,
        next_run_at=_next_run(request),
        **request.model_dump(),
    )
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return _schedule_response(schedule)


@router.delete("/{schedule_id}")
async def delete_schedule(schedule_id: int):
    if not RunStore().delete_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"status": "deleted"}


@router.post("/{schedule_id}/run")
async def run_schedule_now(schedule_id: int):
    """Fire a schedule immediately without changing its next_run_at."""
    scheduler = get_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    schedule = RunStore().get_schedule(schedule_id)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")

    run_id = await scheduler.execute_schedule(schedule)
    if run_id is None:
        raise HTTPException(status_code=409, detail="Schedule could not be started")
    return {"status": "started", "test_run_id": run_id}
