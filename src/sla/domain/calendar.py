"""
Business Calendar
=================

Measures SLA time on a working schedule.

All arithmetic happens on UTC instants; the schedule's timezone is only
used to place each day's working window, so DST shifts move the window
rather than stretching or shrinking it.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterator, Tuple

from src.sla.domain.value_objects import BusinessHoursConfig

UTC = timezone.utc


def as_utc(instant: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


class BusinessCalendar:
    """
    Business-time arithmetic for one ``BusinessHoursConfig``.

    With the schedule disabled this is plain wall-clock arithmetic.
    With it enabled only time inside ``[start_time, end_time)`` on a
    working day counts. Both operations are inverse to each other:
    ``elapsed_business_duration(s, add_business_duration(s, d)) == d``.
    """

    def __init__(self, config: BusinessHoursConfig):
        self._config = config

    @property
    def config(self) -> BusinessHoursConfig:
        return self._config

    def _windows(self, start: datetime) -> Iterator[Tuple[datetime, datetime]]:
        """Yield UTC working windows from the local day containing ``start`` onwards."""
        zone = self._config.zone
        working_days = self._config.weekday_indices
        day = start.astimezone(zone).date()

        while True:
            if day.weekday() in working_days:
                opens = datetime.combine(day, self._config.start_time, tzinfo=zone).astimezone(UTC)
                closes = datetime.combine(day, self._config.end_time, tzinfo=zone).astimezone(UTC)
                if closes > opens:
                    yield opens, closes
            day += timedelta(days=1)

    def add_business_duration(self, start: datetime, duration: timedelta) -> datetime:
        """
        Instant at which ``duration`` of business time has passed since ``start``.

        Args:
            start: Instant the clock starts (rounded forward into the next
                working window when outside one)
            duration: Business time to add

        Returns:
            The due instant (UTC)
        """
        if duration < timedelta(0):
            raise ValueError("duration cannot be negative")

        start = as_utc(start)
        if not self._config.enabled:
            return start + duration

        remaining = duration
        for opens, closes in self._windows(start):
            segment_start = max(opens, start)
            if segment_start >= closes:
                continue

            available = closes - segment_start
            if remaining <= available:
                return segment_start + remaining
            remaining -= available

        raise AssertionError("working windows are unbounded")

    def elapsed_business_duration(self, start: datetime, now: datetime) -> timedelta:
        """
        Business time between ``start`` and ``now``.

        Returns zero when ``now`` is not after ``start``.
        """
        start = as_utc(start)
        now = as_utc(now)
        if now <= start:
            return timedelta(0)

        if not self._config.enabled:
            return now - start

        total = timedelta(0)
        for opens, closes in self._windows(start):
            if opens >= now:
                break
            segment_start = max(opens, start)
            segment_end = min(closes, now)
            if segment_end > segment_start:
                total += segment_end - segment_start

        return total
