from __future__ import annotations

import re
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Bangkok"
DAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_HHMMSS = re.compile(r"^\d{2}:\d{2}:\d{2}$")
_HHMM = re.compile(r"^\d{2}:\d{2}$")


def _pad(value: str) -> str:
    if _HHMM.match(value):
        return f"{value}:00"
    return value


def is_branch_open(
    is_force_closed: bool,
    open_hours: Any,
    now: datetime | None = None,
    timezone_name: str = DEFAULT_TIMEZONE,
) -> bool:
    """Return whether a branch accepts orders at ``now`` in the store's local time.

    Branches without configured hours (or without spans for today) count as
    open. A span whose closing time is not after its opening time runs past
    midnight.
    """
    if is_force_closed:
        return False
    if not isinstance(open_hours, dict) or not open_hours:
        return True

    zone = ZoneInfo(timezone_name)
    if now is None:
        local = datetime.now(zone)
    elif now.tzinfo is None:
        local = now.replace(tzinfo=zone)
    else:
        local = now.astimezone(zone)

    spans = open_hours.get(DAY_KEYS[local.weekday()])
    if not isinstance(spans, list) or not spans:
        return True

    current = local.strftime("%H:%M:%S")
    for span in spans:
        if not isinstance(span, (list, tuple)) or len(span) != 2:
            continue
        opens = _pad(str(span[0] or ""))
        closes = _pad(str(span[1] or ""))
        if not _HHMMSS.match(opens) or not _HHMMSS.match(closes):
            continue
        if closes > opens:
            if opens <= current < closes:
                return True
        elif current >= opens or current < closes:
            return True
    return False
