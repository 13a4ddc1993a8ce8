import logging
import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

import pytz

from services.errors import ValidationError

logger = logging.getLogger(__name__)

# Strict 24-hour HH:MM:SS
TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]:[0-5][0-9]$")
DEFAULT_TIMEZONE = "UTC"


@dataclass(frozen=True)
class BusinessHours:
    start: time
    end: time
    timezone: str


def parse_time_of_day(value, field_name: str) -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if not isinstance(value, str) or not TIME_PATTERN.match(value):
        raise ValidationError(f"{field_name} must be in HH:MM:SS format")
    hours, minutes, seconds = (int(part) for part in value.split(":"))
    return time(hours, minutes, seconds)


def resolve_timezone(name: str):
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"Invalid timezone identifier: {name}")


def validate_business_hours(data: Optional[dict]) -> Optional[BusinessHours]:
    """
    Validates a business hours payload: {"start": "09:00:00", "end": "17:00:00", "timezone": "Europe/Berlin"}.
    Returns None when no window is configured.
    Windows never wrap past midnight, so start must be strictly before end.
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValidationError("business_hours must be an object")

    start_raw = data.get("start")
    end_raw = data.get("end")
    if start_raw is None or end_raw is None:
        raise ValidationError("Both business hours start and end are required")

    start = parse_time_of_day(start_raw, "business_hours.start")
    end = parse_time_of_day(end_raw, "business_hours.end")

    tz_name = data.get("timezone") or DEFAULT_TIMEZONE
    resolve_timezone(tz_name)

    if start >= end:
        raise ValidationError("business hours start must be before end")

    return BusinessHours(start=start, end=end, timezone=tz_name)


def business_hours_of(flow) -> Optional[BusinessHours]:
    if flow.business_hours_start is None or flow.business_hours_end is None:
        return None
    return BusinessHours(
        start=flow.business_hours_start,
        end=flow.business_hours_end,
        timezone=flow.business_hours_timezone or DEFAULT_TIMEZONE,
    )


def is_within_business_hours(flow, now: Optional[datetime] = None) -> bool:
    """
    True when `now`, seen in the flow's timezone, falls inside its window.
    Both boundaries are inclusive. Naive datetimes are treated as UTC.
    """
    hours = business_hours_of(flow)
    if hours is None:
        return True

    if now is None:
        now = datetime.now(pytz.utc)
    elif now.tzinfo is None:
        now = pytz.utc.localize(now)

    local_now = now.astimezone(pytz.timezone(hours.timezone))
    time_of_day = local_now.time().replace(microsecond=0)

    within = hours.start <= time_of_day <= hours.end
    if not within:
        logger.debug(
            f"[BusinessHours] Flow {flow.id} outside window {hours.start}-{hours.end} "
            f"{hours.timezone} (local time {time_of_day})"
        )
    return within
