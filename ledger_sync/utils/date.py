"""
Timestamp conversion utilities.

The ledger stores instants either as epoch milliseconds, ISO strings or native
datetimes (the Firestore client returns ``DatetimeWithNanoseconds``); the
device store reports aware datetimes. Everything is normalised to aware UTC
datetimes at the boundary.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def millis_to_datetime(value: Optional[float]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware datetime."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def datetime_to_millis(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to epoch milliseconds."""
    if value is None:
        return None
    return int(round(ensure_utc(value).timestamp() * 1000))


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into an aware datetime.

    Accepts a trailing ``Z`` and bare dates (``YYYY-MM-DD``, read as midnight
    UTC). Returns None for anything unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        parsed = datetime.strptime(text[:10], "%Y-%m-%d")
        return parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def format_iso(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO string with a ``Z`` suffix."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce a stored timestamp of any supported shape into an aware datetime.

    Args:
        value: datetime, date, epoch millis (int/float), numeric string or ISO string

    Returns:
        Aware UTC datetime or None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return millis_to_datetime(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return millis_to_datetime(int(stripped))
        return parse_iso(stripped)
    # Firestore/protobuf timestamps expose ToDatetime()
    converter = getattr(value, "ToDatetime", None)
    if callable(converter):
        return ensure_utc(converter())
    return None


def same_minute(left: Optional[datetime], right: Optional[datetime]) -> bool:
    """Compare two instants at minute resolution (device due dates drop seconds)."""
    if left is None or right is None:
        return left is None and right is None
    left_utc = ensure_utc(left).replace(second=0, microsecond=0)
    right_utc = ensure_utc(right).replace(second=0, microsecond=0)
    return left_utc == right_utc
