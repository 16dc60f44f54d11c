"""Time helpers."""

from datetime import datetime, timezone
from typing import Callable

# Anything that returns "now". Services accept one so tests can
# move time forward without sleeping.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """
    Current UTC time as a naive datetime.

    Timestamps are stored naive-UTC so they compare the same way
    on SQLite and PostgreSQL.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
