"""Clock helpers for "HH:MM" time-box start times."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, List, Optional

from app.api.schemas.session import TimeBox

MINUTES_PER_DAY = 24 * 60

_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*(am|pm)?\s*$", re.IGNORECASE)


def coerce_clock(value: object) -> Optional[str]:
    """Return an "HH:MM" string for clock or ISO-8601 inputs, or None if unparseable."""
    if not isinstance(value, str) or not value.strip():
        return None
    match = _CLOCK_RE.match(value)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        meridiem = (match.group(3) or "").lower()
        if meridiem == "pm" and hours < 12:
            hours += 12
        elif meridiem == "am" and hours == 12:
            hours = 0
        if hours > 23 or minutes > 59:
            return None
        return minutes_to_clock(hours * 60 + minutes)
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return minutes_to_clock(parsed.hour * 60 + parsed.minute)


def clock_to_minutes(value: str) -> int:
    hours, minutes = [int(part) for part in value.split(":")[:2]]
    return hours * 60 + minutes


def minutes_to_clock(total_minutes: int) -> str:
    total_minutes %= MINUTES_PER_DAY
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def add_minutes(clock: str, minutes: int) -> str:
    return minutes_to_clock(clock_to_minutes(clock) + minutes)


def restamp(time_boxes: Iterable[TimeBox], start: str) -> List[TimeBox]:
    """Return copies of the boxes with start times walked forward from ``start``."""
    cursor = clock_to_minutes(start)
    stamped: List[TimeBox] = []
    for box in time_boxes:
        stamped.append(box.model_copy(update={"start_time": minutes_to_clock(cursor)}))
        cursor += box.duration
    return stamped
