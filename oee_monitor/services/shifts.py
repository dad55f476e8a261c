"""
OEE Monitor - Shift Resolution

Maps a timestamp onto the plant's three shifts:
morning 05:40-13:50, afternoon 13:50-22:08, night 22:08-05:40.
"""

from datetime import datetime, time, timezone
from enum import Enum
from zoneinfo import ZoneInfo


class Shift(str, Enum):
    """Production shift enumeration."""
    MORNING = "morning"
    AFTERNOON = "afternoon"
    NIGHT = "night"


MORNING_START = time(5, 40)
AFTERNOON_START = time(13, 50)
NIGHT_START = time(22, 8)


def resolve_shift(moment: datetime, tz_name: str = "UTC") -> Shift:
    """Return the shift a moment falls into, in the plant's local time."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local_time = moment.astimezone(ZoneInfo(tz_name)).time()

    if MORNING_START <= local_time < AFTERNOON_START:
        return Shift.MORNING
    if AFTERNOON_START <= local_time < NIGHT_START:
        return Shift.AFTERNOON
    return Shift.NIGHT
