from __future__ import annotations

import datetime as dt
import re
from typing import Optional, Tuple

from zoneinfo import ZoneInfo

from .config import settings

UTC = dt.timezone.utc
LOCAL_TZ = ZoneInfo(settings.timezone)

END_OF_DAY = dt.time(23, 59, 59, 999000)

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """Normalize user supplied timestamps; naive values are local wall-clock time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(UTC)


def from_db_datetime(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_date(value: dt.datetime) -> dt.date:
    return ensure_utc(value).astimezone(LOCAL_TZ).date()


def local_date_string(value: dt.datetime) -> str:
    return local_date(value).isoformat()


def end_of_local_day(value: dt.datetime) -> dt.datetime:
    """Last instant (23:59:59.999) of the local day ``value`` falls on, in UTC."""
    day = local_date(value)
    return dt.datetime.combine(day, END_OF_DAY, tzinfo=LOCAL_TZ).astimezone(UTC)


def whole_seconds(start: dt.datetime, end: dt.datetime) -> int:
    return int((ensure_utc(end) - ensure_utc(start)).total_seconds() // 1)


def parse_hhmm(value: str) -> Tuple[int, int]:
    match = _HHMM.match(value.strip()) if value else None
    if not match:
        raise ValueError(f"Time must use the HH:MM format, got {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Time out of range: {value!r}")
    return hours, minutes


def next_occurrence(hhmm: str, now: dt.datetime) -> dt.datetime:
    """Next local wall-clock instant matching ``hhmm``; today if still ahead, else tomorrow."""
    hours, minutes = parse_hhmm(hhmm)
    local_now = ensure_utc(now).astimezone(LOCAL_TZ)
    candidate = local_now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = dt.datetime.combine(
            local_now.date() + dt.timedelta(days=1), dt.time(hours, minutes), tzinfo=LOCAL_TZ
        )
    return candidate.astimezone(UTC)


def advance_daily(scheduled: dt.datetime, now: dt.datetime) -> dt.datetime:
    """Roll a daily recurring instant forward until it lies after ``now``."""
    local_scheduled = ensure_utc(scheduled).astimezone(LOCAL_TZ)
    local_now = ensure_utc(now).astimezone(LOCAL_TZ)
    wall_time = local_scheduled.timetz().replace(tzinfo=None)
    day = local_scheduled.date()
    candidate = dt.datetime.combine(day, wall_time, tzinfo=LOCAL_TZ)
    while candidate <= local_now:
        day += dt.timedelta(days=1)
        candidate = dt.datetime.combine(day, wall_time, tzinfo=LOCAL_TZ)
    return candidate.astimezone(UTC)


def format_hhmm(value: dt.datetime) -> str:
    return ensure_utc(value).astimezone(LOCAL_TZ).strftime("%H:%M")


def compose_task_name(task: str, other_detail: Optional[str] = None) -> str:
    """Turn the free-text "other" selection into its stored ``"other: <detail>"`` form."""
    name = (task or "").strip()
    detail = (other_detail or "").strip()
    if name == settings.other_task and detail:
        return f"{settings.other_task}: {detail}"
    return name


def display_task_name(task: Optional[str]) -> Optional[str]:
    if task is None:
        return None
    prefix = f"{settings.other_task}: "
    if task.startswith(prefix):
        return task[len(prefix):]
    return task
