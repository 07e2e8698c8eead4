"""Timezone name mapping and local time formatting."""
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'America/Denver'

# Vendor abbreviations seen in CalDAV payloads
TIMEZONE_MAP = {
    'GMT-0600': 'America/Denver',
    'GMT-0700': 'America/Denver',
    'GMT-0500': 'America/Chicago',
    'GMT-0400': 'America/New_York',
    'GMT-0800': 'America/Los_Angeles',
    'MST': 'America/Denver',
    'MDT': 'America/Denver',
    'CST': 'America/Chicago',
    'CDT': 'America/Chicago',
    'EST': 'America/New_York',
    'EDT': 'America/New_York',
    'PST': 'America/Los_Angeles',
    'PDT': 'America/Los_Angeles',
    'UTC': 'UTC',
    'Z': 'UTC',
}


def map_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> str:
    """
    Map a timezone string to an IANA identifier.

    Args:
        name: IANA name, vendor abbreviation, or None
        default: IANA name used when the input is empty or unknown

    Returns:
        IANA timezone identifier
    """
    if not name:
        return default
    if '/' in name:
        return name
    return TIMEZONE_MAP.get(name.strip().upper(), default)


def get_zone(name: Optional[str], default: str = DEFAULT_TIMEZONE):
    """Return a tzinfo for ``name``, falling back to UTC when unavailable."""
    iana = map_timezone(name, default)
    try:
        return ZoneInfo(iana)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Unknown timezone '{iana}', using UTC: {e}")
        return timezone.utc


def localize_time(instant: datetime, tz_name: Optional[str],
                  default: str = DEFAULT_TIMEZONE) -> str:
    """
    Format an instant as HH:MM in the given timezone.

    Naive instants are treated as UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(get_zone(tz_name, default)).strftime('%H:%M')
