"""Parsing of user-supplied times and message/favourite type names."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional

_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M")

_MSG_TYPES = {
    "text": 1,
    "image": 3,
    "voice": 34,
    "video": 43,
    "sticker": 47,
    "location": 48,
    "link": 49,
    "file": 49,
    "call": 50,
    "system": 10000,
}

_FAV_TYPES = {
    "text": 1,
    "image": 2,
    "article": 5,
    "card": 19,
    "video": 20,
}


def _local_timestamp(dt: datetime, original: str) -> int:
    first = dt.replace(fold=0).timestamp()
    second = dt.replace(fold=1).timestamp()
    if first != second:
        raise ValueError(f"ambiguous local time: {original}")
    return int(first)


def _parse_date(s: str) -> Optional[date]:
    try:
        return datetime.strptime(s, "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_time(s: str) -> int:
    """Parse YYYY-MM-DD[ HH:MM[:SS]] in local time to a Unix timestamp."""
    for fmt in _DATETIME_FORMATS:
        try:
            dt = datetime.strptime(s, fmt)
        except ValueError:
            continue
        return _local_timestamp(dt, s)
    day = _parse_date(s)
    if day is not None:
        return _local_timestamp(datetime.combine(day, time(0, 0, 0)), s)
    raise ValueError(
        f"cannot parse time '{s}'; expected YYYY-MM-DD / YYYY-MM-DD HH:MM / YYYY-MM-DD HH:MM:SS"
    )


def parse_time_end(s: str) -> int:
    """Like parse_time, but a bare date means the last second of that day."""
    if len(s) == 10:
        day = _parse_date(s)
        if day is not None:
            return _local_timestamp(datetime.combine(day, time(23, 59, 59)), s)
    return parse_time(s)


def parse_msg_type(s: str) -> Optional[int]:
    """Message type name to its local_type value; None if unknown."""
    return _MSG_TYPES.get(s)


def parse_fav_type(s: str) -> Optional[int]:
    """Favourite type name to its type value; None if unknown."""
    return _FAV_TYPES.get(s)