from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

BANGKOK_TZ = timezone(timedelta(hours=7))
TXN_HISTORY_LIMIT = 50

_JWT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")
_SECRET_KEY_PATTERN = re.compile(r"token|secret|password|authorization", re.IGNORECASE)
_SECRET_VALUE_PATTERN = re.compile(r"secret|password", re.IGNORECASE)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_bangkok_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).astimezone(BANGKOK_TZ).isoformat()


def is_expired(expired_at: datetime | None, now: datetime | None = None) -> bool:
    if expired_at is None:
        return False
    current = to_utc(now) if now else datetime.now(timezone.utc)
    return current >= to_utc(expired_at)


def last4_digits(value: Any) -> Optional[str]:
    if value is None:
        return None
    digits = re.sub(r"\D+", "", str(value))
    if len(digits) < 4:
        return None
    return digits[-4:]


def append_id_with_trim(history: Iterable[Any] | None, new_id: int, limit: int = TXN_HISTORY_LIMIT) -> List[int]:
    ids: List[int] = []
    for raw in history or []:
        try:
            ids.append(int(raw))
        except (TypeError, ValueError):
            continue
    ids.append(int(new_id))
    return ids[-limit:]


def parse_number(value: Any) -> Optional[float]:
    """Parse ints, floats and numeric strings; reject booleans, NaN and infinity."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_int(value: Any) -> Optional[int]:
    number = parse_number(value)
    if number is None or number != int(number):
        return None
    return int(number)


def parse_ids(raw: Any) -> List[int]:
    """Accept `1,2,3`, a list of ids, or a single id; keep positive unique ids in order."""
    if raw is None:
        return []
    if isinstance(raw, str):
        parts: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        parts = raw
    else:
        parts = [raw]

    ids: List[int] = []
    for part in parts:
        if isinstance(part, str):
            part = part.strip()
        number = parse_int(part)
        if number is not None and number > 0 and number not in ids:
            ids.append(number)
    return ids


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    radius = 6371.0
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return radius * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_valid_location(lat: Any, lng: Any) -> bool:
    lat_num = parse_number(lat)
    lng_num = parse_number(lng)
    if lat_num is None or lng_num is None:
        return False
    return -90 <= lat_num <= 90 and -180 <= lng_num <= 180


def _redact(key: str, value: Any) -> Any:
    if isinstance(value, str):
        if _JWT_PATTERN.match(value) or _SECRET_KEY_PATTERN.search(key):
            return "[redacted]"
        if _SECRET_VALUE_PATTERN.search(value):
            return "[redacted]"
    return value


def log_ctx(**kwargs) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is not None and v != "":
            parts.append(f"{k}={_redact(k, v)}")
    return " ".join(parts)
