"""Date and timestamp helpers shared by the pipeline, the store and the monitor."""

from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

Clock = Callable[[], datetime]

DateLike = Union[date, datetime, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_day(value: DateLike) -> date:
    """Collapse a date, datetime or ISO string to its UTC calendar day.

    Naive datetimes are taken to be UTC already; time-of-day is discarded.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def to_epoch(ts: Optional[datetime]) -> Optional[float]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
