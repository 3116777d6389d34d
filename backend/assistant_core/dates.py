from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, tzinfo

from records.time_utils import to_iso, utc_now

DEFAULT_HOUR = 9

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_IN_DAYS = re.compile(r"\bin\s+(\d{1,3})\s+days?\b")
_IN_WEEKS = re.compile(r"\bin\s+(\d{1,2})\s+weeks?\b")
_IN_HOURS = re.compile(r"\bin\s+(\d{1,3})\s+hours?\b")
_IN_MINUTES = re.compile(r"\bin\s+(\d{1,4})\s+minutes?\b")
_CLOCK_12 = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)")
_CLOCK_24 = re.compile(r"\bat\s+(\d{1,2}):(\d{2})\b")
_DUE_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _time_of_day(text: str) -> time | None:
    if "noon" in text:
        return time(12, 0)
    if "midnight" in text:
        return time(0, 0)
    match = _CLOCK_12.search(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            raise ValueError(f"Invalid time of day: {match.group(0)}")
        if match.group(3).startswith("p") and hour != 12:
            hour += 12
        if match.group(3).startswith("a") and hour == 12:
            hour = 0
        return time(hour, minute)
    match = _CLOCK_24.search(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ValueError(f"Invalid time of day: {match.group(0)}")
        return time(hour, minute)
    return None


def _day_offset(text: str, today: date) -> int | None:
    if "day after tomorrow" in text:
        return 2
    if "tomorrow" in text:
        return 1
    if "today" in text or "tonight" in text:
        return 0
    if "next week" in text:
        return 7
    match = _IN_DAYS.search(text)
    if match:
        return int(match.group(1))
    match = _IN_WEEKS.search(text)
    if match:
        return 7 * int(match.group(1))
    for index, name in enumerate(_WEEKDAYS):
        if re.search(rf"\b{name}\b", text):
            ahead = (index - today.weekday()) % 7
            return ahead or 7
    return None


def parse_local_datetime(value: str, *, zone: tzinfo, now: datetime | None = None) -> datetime:
    """Interpret an ISO timestamp or a short English phrase in the caller's zone.

    Naive ISO values and phrases are read as wall-clock time in ``zone``; a phrase
    that names a day but no time lands on 09:00 local. Unrecognised text raises
    ``ValueError``.
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("A date or time is required.")
    current = (now or utc_now()).astimezone(zone)

    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(iso_text)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None:
            if len(text) == 10:
                parsed = parsed.replace(hour=DEFAULT_HOUR)
            parsed = parsed.replace(tzinfo=zone)
        return parsed.astimezone(zone)

    lower = text.lower()
    match = _IN_HOURS.search(lower)
    if match:
        return current + timedelta(hours=int(match.group(1)))
    match = _IN_MINUTES.search(lower)
    if match:
        return current + timedelta(minutes=int(match.group(1)))

    offset = _day_offset(lower, current.date())
    clock = _time_of_day(lower)
    if offset is None and clock is None:
        raise ValueError(f"Could not understand the date '{text}'.")
    day = current.date() + timedelta(days=offset or 0)
    return datetime.combine(day, clock or time(DEFAULT_HOUR, 0), tzinfo=zone)


def to_utc_iso(value: str, *, zone: tzinfo, now: datetime | None = None) -> str:
    return to_iso(parse_local_datetime(value, zone=zone, now=now))


def local_day_bounds(moment: datetime) -> tuple[str, str]:
    start = datetime.combine(moment.date(), time(0, 0), tzinfo=moment.tzinfo)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return to_iso(start), to_iso(end)


def parse_due_date(value: str) -> str:
    text = (value or "").strip()
    if not _DUE_DATE.match(text):
        raise ValueError("Due date must use the YYYY-MM-DD format.")
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError as exc:
        raise ValueError("Due date is not a real calendar date.") from exc
