"""Recurrence expansion for repeating bookings.

Day-of-week numbers follow the 0 = Sunday ... 6 = Saturday convention used by
the booking API. Occurrences keep the rule's wall-clock start time in the
rule's time zone, so a 09:00 meeting stays at 09:00 local across DST changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable

from app.errors import ApiError
from app.models import RecurrenceFrequency
from app.services.time_windows import resolve_time_zone

DEFAULT_OCCURRENCE_COUNT = 10
MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True, slots=True)
class Occurrence:
    start_at: datetime
    end_at: datetime


def sunday_based_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def _invalid(message: str) -> ApiError:
    return ApiError(status_code=400, code="INVALID_RECURRENCE", message=message)


def normalize_frequency(frequency: RecurrenceFrequency | str) -> RecurrenceFrequency:
    try:
        return RecurrenceFrequency(frequency)
    except ValueError as exc:
        raise _invalid(f"Unsupported frequency: {frequency}.") from exc


def _normalize_days(days_of_week: Iterable[int] | None, start_date: date) -> set[int]:
    days = {int(day) for day in (days_of_week or [])}
    invalid = sorted(day for day in days if day < 0 or day > 6)
    if invalid:
        raise _invalid(f"days_of_week values must be between 0 and 6, got {invalid}.")
    if not days:
        days = {sunday_based_weekday(start_date)}
    return days


def expand_recurrence(
    *,
    frequency: RecurrenceFrequency | str,
    start_date: date,
    start_time_minutes: int,
    duration_minutes: int,
    time_zone: str,
    interval: int = 1,
    days_of_week: Iterable[int] | None = None,
    end_date: date | None = None,
    count: int | None = None,
    max_count: int | None = None,
) -> list[Occurrence]:
    resolved_frequency = normalize_frequency(frequency)
    if interval is None or int(interval) < 1:
        raise _invalid("interval must be at least 1.")
    if duration_minutes is None or int(duration_minutes) < 1:
        raise _invalid("duration_minutes must be at least 1.")
    if start_time_minutes < 0 or start_time_minutes >= MINUTES_PER_DAY:
        raise _invalid("start_time_minutes must be within a day.")

    step = int(interval)
    limit = max(1, count if count is not None else DEFAULT_OCCURRENCE_COUNT)
    if max_count is not None:
        limit = min(limit, max(1, max_count))

    tz = resolve_time_zone(time_zone)
    wall_clock = time(hour=start_time_minutes // 60, minute=start_time_minutes % 60)
    duration = timedelta(minutes=int(duration_minutes))

    def _build(day: date) -> Occurrence:
        start_local = datetime.combine(day, wall_clock, tzinfo=tz)
        start_utc = start_local.astimezone(timezone.utc)
        return Occurrence(start_at=start_utc, end_at=start_utc + duration)

    occurrences: list[Occurrence] = []

    if resolved_frequency == RecurrenceFrequency.DAILY:
        for index in range(limit):
            day = start_date + timedelta(days=index * step)
            if end_date is not None and day > end_date:
                break
            occurrences.append(_build(day))
        return occurrences

    days = _normalize_days(days_of_week, start_date)
    cursor = start_date
    while len(occurrences) < limit:
        if end_date is not None and cursor > end_date:
            break
        weeks_from_start = (cursor - start_date).days // 7
        if weeks_from_start % step == 0 and sunday_based_weekday(cursor) in days:
            occurrences.append(_build(cursor))
        cursor += timedelta(days=1)
    return occurrences


def expand_rule(rule: Any, *, default_count: int | None = None, max_count: int | None = None) -> list[Occurrence]:
    """Expand a RecurringBookingRule (or anything shaped like one).

    A rule bounded only by `end_date` keeps `count` empty; `default_count` then caps it.
    """
    return expand_recurrence(
        frequency=rule.frequency,
        start_date=rule.start_date,
        start_time_minutes=rule.start_time_minutes,
        duration_minutes=rule.duration_minutes,
        time_zone=rule.time_zone,
        interval=rule.interval,
        days_of_week=rule.days_of_week,
        end_date=rule.end_date,
        count=rule.count if rule.count is not None else default_count,
        max_count=max_count,
    )
