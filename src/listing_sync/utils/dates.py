"""
Date helpers.

All timestamps are stored as naive UTC. Provider timestamps arrive as ISO
strings with offsets (``2024-01-15T10:30:00.000-04:00``) and are normalized
here before they reach the database.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional, Union


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp (or datetime) into naive UTC; ``None`` if unparseable."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_date_key(value: Union[str, datetime, date, None]) -> Optional[str]:
    """Normalize a provider date/timestamp to a ``YYYY-MM-DD`` UTC key."""
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, str) and len(value) == 10:
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError:
            return None
    parsed = to_naive_utc(value)
    return parsed.date().isoformat() if parsed else None


def iter_days(date_from: date, date_to: date) -> Iterator[date]:
    """Yield every day in ``[date_from, date_to]``."""
    current = date_from
    while current <= date_to:
        yield current
        current += timedelta(days=1)
