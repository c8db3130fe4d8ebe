from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional, Union

from zoneinfo import ZoneInfo

VN_TZ = ZoneInfo("Asia/Ho_Chi_Minh")


DatetimeLike = Optional[Union[datetime, date]]


def now_vn() -> datetime:
    return datetime.now(tz=VN_TZ)


def today_vn() -> date:
    return now_vn().date()


def ensure_vn_datetime(value: DatetimeLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=VN_TZ)
    if value.tzinfo is None:
        # naive values come back from SQLite; they were written in VN time
        return value.replace(tzinfo=VN_TZ)
    return value.astimezone(VN_TZ)


def format_vn(value: DatetimeLike, fmt: str = "%Y-%m-%d %H:%M") -> str:
    if value is None:
        return ""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    converted = ensure_vn_datetime(value)
    if converted is None:
        return ""
    return converted.strftime(fmt)


def parse_date_value(raw: Optional[str]) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` (or full ISO datetime) string into a date.

    Returns ``None`` for empty or unparsable input instead of raising, so
    callers can treat bad filter values as absent.
    """
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    converted = ensure_vn_datetime(parsed)
    return converted.date() if converted else None
