from datetime import datetime, timezone
from typing import Any, Optional, overload


@overload
def to_utc(dt: None) -> None: ...


@overload
def to_utc(dt: datetime) -> datetime: ...


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime has UTC tzinfo. Handles None gracefully."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse a GitHub ISO-8601 timestamp ("2024-01-02T03:04:05Z") to UTC.

    Returns None for empty or unparseable input instead of raising.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        return from_epoch_seconds(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def from_epoch_seconds(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def isoformat_z(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime as the "...Z" form the GitHub search API expects."""
    if dt is None:
        return None
    return to_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")
