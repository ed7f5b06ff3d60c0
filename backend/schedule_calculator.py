"""
Schedule Calculator Module.

Computes when a recurring test run should next fire.
Supports frequencies: daily, weekly, every12h, every6h.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "every12h", "every6h")

# Day name mapping for descriptions (0=Sunday, matching ScheduledRun.day_of_week)
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

FIXED_INTERVALS = {
    "every12h": timedelta(hours=12),
    "every6h": timedelta(hours=6),
}


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the frame every stored timestamp uses."""
    return datetime.now(ZoneInfo("UTC")).replace(tzinfo=None)


def parse_time_of_day(time_of_day: str) -> tuple[int, int]:
    """Parse HH:MM. Raises ValueError on malformed input."""
    hour, minute = map(int, time_of_day.split(":"))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: {time_of_day}")
    return hour, minute


def compute_next_run(
    frequency: str,
    day_of_week: Optional[int],
    time_of_day: str,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Calculate the next fire time for a schedule.

    Pure apart from reading the clock when `now` is omitted. The result is in
    the same frame (naive or aware, same timezone) as `now`.

    Args:
        frequency: One of "daily", "weekly", "every12h", "every6h"
        day_of_week: For weekly - day number (0=Sunday, 6=Saturday)
        time_of_day: Time in HH:MM format
        now: Reference instant

    Raises:
        ValueError: for an unknown frequency or malformed time
    """
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown schedule frequency: {frequency}")

    now = now or datetime.now()
    hour, minute = parse_time_of_day(time_of_day)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if frequency == "daily":
        if candidate <= now:
            candidate += timedelta(days=1)
    elif frequency == "weekly":
        # Python: Monday=0, Sunday=6. Ours: Sunday=0, Saturday=6
        current_day = (candidate.weekday() + 1) % 7
        days_until = ((day_of_week or 0) - current_day + 7) % 7
        if days_until == 0 and candidate <= now:
            days_until = 7
        candidate += timedelta(days=days_until)
    elif candidate <= now:
        candidate += FIXED_INTERVALS[frequency]

    return candidate


def compute_next_run_utc(
    frequency: str,
    day_of_week: Optional[int],
    time_of_day: str,
    timezone: Optional[str] = None,
    now_utc: Optional[datetime] = None,
) -> datetime:
    """
    Calculate the next fire time with time_of_day interpreted in `timezone`.

    Returns:
        Naive UTC datetime, as stored on ScheduledRun.next_run_at
    """
    tz = ZoneInfo(timezone) if timezone else ZoneInfo("UTC")
    now_utc = now_utc or utcnow()
    now_local = now_utc.replace(tzinfo=ZoneInfo("UTC")).astimezone(tz)
    next_local = compute_next_run(frequency, day_of_week, time_of_day, now_local)
    return next_local.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)


def describe_schedule(
    frequency: str,
    day_of_week: Optional[int] = None,
    time_of_day: Optional[str] = None,
) -> str:
    """Generate a human-readable description of a schedule."""
    if not time_of_day:
        return f"{frequency} (no time set)"

    if frequency == "daily":
        return f"Daily at {_format_time(time_of_day)}"
    elif frequency == "weekly":
        if day_of_week is None or not 0 <= day_of_week <= 6:
            return "Weekly (incomplete)"
        return f"Weekly on {DAY_NAMES[day_of_week]} at {_format_time(time_of_day)}"
    elif frequency == "every12h":
        return f"Every 12 hours from {_format_time(time_of_day)}"
    elif frequency == "every6h":
        return f"Every 6 hours from {_format_time(time_of_day)}"

    return f"Unknown schedule frequency: {frequency}"


def _format_time(time_of_day: str) -> str:
    """Format time string for display (convert to 12h format)."""
    try:
        hour, minute = map(int, time_of_day.split(":"))
        period = "AM" if hour < 12 else "PM"
        display_hour = hour % 12 or 12
        return f"{display_hour}:{minute:02d} {period}"
    except (ValueError, AttributeError):
        return time_of_day


def get_seconds_until(next_run: Optional[datetime]) -> Optional[int]:
    """Get seconds until the next scheduled run."""
    if not next_run:
        return None
    now = utcnow()
    delta = (next_run - now).total_seconds()
    return max(0, int(delta))


def format_relative_time(next_run: Optional[datetime]) -> str:
    """Format next run time as relative time string."""
    seconds = get_seconds_until(next_run)
    if seconds is None:
        return "Not scheduled"
    if seconds == 0:
        return "Now"
    if seconds < 60:
        return f"in {seconds}s"
    if seconds < 3600:
        return f"in {seconds // 60}m"
    if seconds < 86400:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"in {hours}h {minutes}m" if minutes else f"in {hours}h"
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    return f"in {days}d {hours}h" if hours else f"in {days}d"
