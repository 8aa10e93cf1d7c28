"""Time helpers.

All timestamps are UTC. Some backends (SQLite in tests) hand back naive
datetimes, so anything read from storage goes through ``as_utc`` before it is
compared against ``utc_now()``.
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
