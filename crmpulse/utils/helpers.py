"""
Helper utilities
"""
from datetime import date, datetime, timezone
from typing import Any, List, Optional

from dateutil import parser as date_parser


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def to_float(value: Any, default: float = 0.0) -> float:
    """CRM properties arrive as strings ("1500.00", "", None)"""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a CRM timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings and epoch milliseconds (int or digit string).
    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        millis = float(value)
        seconds = millis / 1000 if millis > 1e11 else millis
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        try:
            dt = date_parser.isoparse(str(value).strip())
        except (ValueError, OverflowError):
            return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def day_key(value: Any) -> Optional[str]:
    """Daily bucket key (YYYY-MM-DD, UTC) for a timestamp, None if unparsable"""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    dt = parse_timestamp(value)
    return dt.date().isoformat() if dt else None


def month_key(day: str) -> str:
    """YYYY-MM for a YYYY-MM-DD bucket key"""
    return day[:7]


def isoformat_z(dt: datetime) -> str:
    """Serialize to ISO-8601 UTC with a trailing Z (millisecond precision)"""
    dt_utc = dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return dt_utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    """Current time in UTC, as aware datetime"""
    return datetime.now(timezone.utc)


def round_to(value: float, digits: int) -> float:
    return float(round(value, digits))
