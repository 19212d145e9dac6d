# src/timezone_utils.py
#
# Timezone utilities for consistent datetime handling

from datetime import datetime
from typing import Optional

import pytz

from config.settings import APP_TIMEZONE

# Ipoh, Perak runs on Malaysia time (UTC+8, no DST)
DEFAULT_TIMEZONE = APP_TIMEZONE
_tz = pytz.timezone(DEFAULT_TIMEZONE)


def now() -> datetime:
    """Get current timezone-aware datetime in the app timezone."""
    return datetime.now(_tz)


def now_iso() -> str:
    """Current time as an ISO string, used for updated_at stamps."""
    return now().isoformat()


def parse_iso_local(iso_string: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO timestamp (with or without offset, 'Z' allowed) into a
    naive local datetime. Returns None for empty or malformed input.
    """
    if not iso_string:
        return None
    try:
        dt = datetime.fromisoformat(iso_string.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(_tz)
    return dt.replace(tzinfo=None)

