"""Time source abstraction.

Token expiry, TOTP time steps and authorization request TTLs all read the
current time through a ``Clock`` so tests can pin it.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, moment: datetime | None = None) -> None:
        self._moment = as_utc(moment) if moment else datetime.now(UTC)

    def now(self) -> datetime:
        return self._moment

    def advance(self, delta: timedelta) -> None:
        self._moment += delta

    def set(self, moment: datetime) -> None:
        self._moment = as_utc(moment)


def as_utc(moment: datetime) -> datetime:
    """Return an aware UTC datetime.

    Some database drivers hand back naive datetimes for timestamp columns;
    those are stored in UTC.
    """
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)
