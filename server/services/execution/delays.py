"""Resume time arithmetic for DELAY nodes."""

from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from constants import DELAY_UNIT_MS, MAX_BUSINESS_DAY_SEARCH
from models.workflow import BusinessHours, DelayConfig


def parse_clock(value: str) -> time:
    """Parse an "HH:MM" wall-clock time.

    Raises:
        ValueError: If the string is not a valid 24h time
    """
    hours, sep, minutes = (value or "").partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit() or len(minutes) != 2:
        raise ValueError(f"Invalid time of day: {value!r}")
    return time(int(hours), int(minutes))


def convert_to_ms(duration: float, unit: str) -> int:
    """Convert a duration in ``unit`` to milliseconds.

    Raises:
        ValueError: If the unit is unknown
    """
    if unit not in DELAY_UNIT_MS:
        raise ValueError(f"Invalid delay unit: {unit}")
    return int(duration * DELAY_UNIT_MS[unit])


def _weekday(moment: datetime) -> int:
    """Day of week with 0=Sunday .. 6=Saturday."""
    return (moment.weekday() + 1) % 7


def _next_day_at(moment: datetime, start: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(moment.date() + timedelta(days=1), start, tzinfo=tz)


def align_to_business_hours(moment: datetime, hours: BusinessHours) -> datetime:
    """Roll ``moment`` forward to the next instant inside the business window.

    A moment already inside the window is returned unchanged. Days not in
    ``days_of_week`` are skipped; before opening moves to opening time; at or
    after closing moves to the next day's opening.

    Raises:
        ValueError: If no allowed day exists within the search horizon
    """
    tz = ZoneInfo(hours.timezone)
    start = parse_clock(hours.start)
    end = parse_clock(hours.end)
    allowed = set(hours.days_of_week)

    local = moment.astimezone(tz)

    # One extra pass per day for the before-opening and after-closing moves
    for _ in range(MAX_BUSINESS_DAY_SEARCH * 2 + 2):
        clock = local.timetz().replace(tzinfo=None)
        if _weekday(local) not in allowed:
            local = _next_day_at(local, start, tz)
        elif clock < start:
            local = datetime.combine(local.date(), start, tzinfo=tz)
        elif clock >= end:
            local = _next_day_at(local, start, tz)
        else:
            return local.astimezone(timezone.utc)

    raise ValueError(f"No business hours found within {MAX_BUSINESS_DAY_SEARCH} days")


def calculate_resume_time(config: DelayConfig, now: Optional[datetime] = None) -> datetime:
    """Compute when a DELAY node should resume.

    Args:
        config: DELAY node config
        now: Reference time, defaults to the current UTC time

    Returns:
        Timezone-aware UTC resume time
    """
    now = now or datetime.now(timezone.utc)
    resume_at = now + timedelta(milliseconds=convert_to_ms(config.duration, config.unit))

    if config.respect_business_hours:
        resume_at = align_to_business_hours(resume_at, config.business_hours or BusinessHours())

    return resume_at.astimezone(timezone.utc)
