# time_utils.py
#
# Clock-time helpers used by the scheduler:
# - "HH:MM" <-> minutes since midnight
# - adding / subtracting durations (wraps around midnight)
# - travel time from a distance and a minutes-per-km rate
# - customer time slots like "11:30am - 1:00pm"
#
# None of these raise on bad input; callers check for None.

import math
import re
from datetime import datetime, timedelta
from typing import Optional

MINUTES_PER_DAY = 24 * 60

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_HHMM_AMPM = re.compile(r"^(\d{1,2}):(\d{2})\s*(am|pm)$", re.IGNORECASE)
_HH_DOT_MM = re.compile(r"^(\d{1,2})\.(\d{2})$")
_SLOT_START = re.compile(r"^(\d{1,2}):(\d{2})\s*(am|pm)", re.IGNORECASE)
_SLOT_END = re.compile(r"-\s*(\d{1,2}):(\d{2})\s*(am|pm)", re.IGNORECASE)


def _to_24h(hours: int, period: str) -> int:
    period = period.lower()
    if period == "pm" and hours != 12:
        return hours + 12
    if period == "am" and hours == 12:
        return 0
    return hours


def _valid(hours: int, minutes: int) -> bool:
    return 0 <= hours <= 23 and 0 <= minutes <= 59


def time_to_minutes(value) -> Optional[int]:
    """
    Convert a clock time to minutes since midnight.

    Accepts "HH:MM" (24h, optional ":SS"), "H:MM am/pm" and "HH.MM".
    Returns None for empty, malformed or out-of-range input.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    match = _HHMM.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        seconds = int(match.group(3) or 0)
        if not _valid(hours, minutes) or seconds > 59:
            return None
        return hours * 60 + minutes

    match = _HHMM_AMPM.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if not (1 <= hours <= 12) or minutes > 59:
            return None
        return _to_24h(hours, match.group(3)) * 60 + minutes

    match = _HH_DOT_MM.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if not _valid(hours, minutes):
            return None
        return hours * 60 + minutes

    return None


def minutes_to_time(minutes) -> str:
    """Convert minutes since midnight to "HH:MM", wrapping modulo 24h."""
    total = int(round(minutes)) % MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def add_minutes(time_str: str, minutes) -> str:
    """Add minutes to a "HH:MM" string. Malformed input comes back unchanged."""
    total = time_to_minutes(time_str)
    if total is None:
        return time_str
    return minutes_to_time(total + minutes)


def subtract_minutes(time_str: str, minutes) -> str:
    """Subtract minutes from a "HH:MM" string (wraps before midnight)."""
    total = time_to_minutes(time_str)
    if total is None:
        return time_str
    return minutes_to_time(total - minutes)


def travel_minutes(distance_km, minutes_per_km) -> int:
    """
    Straight travel time: round(distance_km * minutes_per_km).
    Missing, negative or non-finite values count as zero.
    """
    try:
        km = float(distance_km)
        rate = float(minutes_per_km)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(km) or not math.isfinite(rate) or km <= 0 or rate <= 0:
        return 0
    # round-half-up, the way the ops team quotes travel times
    return int(math.floor(km * rate + 0.5))


def to_datetime(date_iso: str, time_str: str) -> Optional[datetime]:
    """
    Combine "YYYY-MM-DD" and "HH:MM" into a naive datetime.
    Returns None if either part is missing or malformed.
    """
    if not date_iso or not time_str:
        return None
    mins = time_to_minutes(time_str)
    if mins is None:
        return None
    try:
        day = datetime.strptime(date_iso.strip()[:10], "%Y-%m-%d")
    except (ValueError, AttributeError):
        return None
    return day.replace(hour=mins // 60, minute=mins % 60)


def ensure_end_after_start(start: datetime, end: datetime) -> datetime:
    """Roll an end instant to the next day when it is not after its start (overnight returns)."""
    if end <= start:
        return end + timedelta(days=1)
    return end


def minutes_of(dt: datetime) -> int:
    """Wall-clock minutes since midnight of a datetime."""
    return dt.hour * 60 + dt.minute


def parse_time_slot_start(slot: Optional[str]) -> Optional[int]:
    """Start of a customer slot, e.g. "11:30am - 1:00pm" -> 690."""
    if not slot or slot.strip().lower() == "none":
        return None
    match = _SLOT_START.match(slot.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    return _to_24h(hours, match.group(3)) * 60 + minutes


def parse_time_slot_end(slot: Optional[str]) -> Optional[int]:
    """End of a customer slot, e.g. "11:30am - 1:00pm" -> 780."""
    if not slot or slot.strip().lower() == "none":
        return None
    match = _SLOT_END.search(slot)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    return _to_24h(hours, match.group(3)) * 60 + minutes


def normalize_time_slot(slot: Optional[str]) -> str:
    """Empty string for missing / "NONE" slots, otherwise the trimmed slot."""
    text = (slot or "").strip()
    if not text or text.lower() == "none":
        return ""
    return text


def format_am_pm(time_str: str) -> str:
    """ "16:30" -> "4:30pm". Malformed input comes back unchanged."""
    mins = time_to_minutes(time_str)
    if mins is None:
        return time_str
    h24, m = divmod(mins, 60)
    period = "pm" if h24 >= 12 else "am"
    h12 = h24 % 12 or 12
    return f"{h12}:{m:02d}{period}"
