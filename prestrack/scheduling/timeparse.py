"""Best-effort natural-language time parsing for meeting requests.

Recognizes ``today``, ``tomorrow``, ``next <weekday>`` (or a bare weekday)
plus an optional ``H(:MM) am/pm`` or 24-hour ``HH:MM`` time of day, or a full
ISO-8601 date or timestamp (naive values are clinic-local).  Missing
parts fall back silently: no time of day means 14:00 local, no date word
means tomorrow.  The provider confirms the final time, so an imprecise
guess is never surfaced as an error.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

DEFAULT_HOUR = 14

WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}

_AMPM_RE = re.compile(r"\b(\d{1,2})(?::([0-5]\d))?\s*(a\.?m\.?|p\.?m\.?)(?![a-z])", re.IGNORECASE)
_24H_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_WEEKDAY_RE = re.compile(r"\b(next\s+)?(" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE)


def _resolve_tz(tz: str | tzinfo | None) -> tzinfo:
    if tz is None:
        return ZoneInfo("UTC")
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def _time_of_day(text: str) -> time | None:
    match = _AMPM_RE.search(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12:
            return None
        is_pm = match.group(3).lower().startswith("p")
        if is_pm and hour != 12:
            hour += 12
        elif not is_pm and hour == 12:
            hour = 0
        return time(hour, minute)

    match = _24H_RE.search(text)
    if match:
        return time(int(match.group(1)), int(match.group(2)))
    return None


def _target_date(text: str, today: datetime) -> datetime:
    lowered = text.lower()
    if "tomorrow" in lowered:
        return today + timedelta(days=1)
    if "today" in lowered or "tonight" in lowered:
        return today

    match = _WEEKDAY_RE.search(lowered)
    if match:
        ahead = (WEEKDAYS[match.group(2)] - today.weekday()) % 7
        # "next monday" on a Monday, or a bare "monday", always means a future day
        if ahead == 0:
            ahead = 7
        return today + timedelta(days=ahead)

    return today + timedelta(days=1)


def _iso_datetime(text: str, zone: tzinfo) -> datetime | None:
    """Full ISO-8601 input; naive values are read as clinic-local."""
    candidate = text.strip()
    if not _ISO_RE.match(candidate):
        return None
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if len(candidate) == 10:
        parsed = datetime.combine(parsed.date(), time(DEFAULT_HOUR, 0))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def parse_preferred_time(
    text: str | None, now: datetime, tz: str | tzinfo | None = None,
) -> datetime:
    """Turn free text such as "tomorrow at 2 PM" into an aware datetime.

    *now* may be in any zone; the result is expressed in *tz* (the clinic's
    local zone).  Never raises on unparseable input.
    """
    zone = _resolve_tz(tz)
    local_now = now.astimezone(zone)
    text = text or ""

    iso = _iso_datetime(text, zone)
    if iso is not None:
        return iso

    day = _target_date(text, local_now)
    tod = _time_of_day(text) or time(DEFAULT_HOUR, 0)
    return datetime.combine(day.date(), tod, tzinfo=zone)
