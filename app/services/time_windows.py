"""Booking window policy checks.

Everything here is pure: the functions only look at the proposed instants and
the room configuration, never at the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.errors import ApiError

QUARTER_HOUR_MINUTES = 15


class RoomPolicy(Protocol):
    availability_start_minutes: int
    availability_end_minutes: int
    min_duration_minutes: int
    max_duration_minutes: int
    time_zone: str | None


@dataclass(frozen=True, slots=True)
class TimeWindow:
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    time_zone: str


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: datetime | str | None, *, label: str) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    raw = (value or "").strip() if isinstance(value, str) else ""
    if not raw:
        raise ApiError(status_code=400, code="INVALID_WINDOW", message=f"Invalid {label} timestamp.")
    if raw.endswith(("Z", "z")):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ApiError(status_code=400, code="INVALID_WINDOW", message=f"Invalid {label} timestamp.") from exc
    return as_utc(parsed)


def resolve_time_zone(name: str | None) -> ZoneInfo:
    normalized = (name or "").strip()
    if not normalized:
        raise ApiError(status_code=400, code="INVALID_TIME_ZONE", message="Time zone is required.")
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ApiError(
            status_code=400,
            code="INVALID_TIME_ZONE",
            message=f"Unknown time zone: {normalized}.",
        ) from exc


def effective_time_zone_name(room: RoomPolicy, organization_time_zone: str | None) -> str:
    return (room.time_zone or "").strip() or (organization_time_zone or "").strip() or "UTC"


def is_quarter_hour_aligned(value: datetime) -> bool:
    normalized = as_utc(value)
    return normalized.second == 0 and normalized.microsecond == 0 and normalized.minute % QUARTER_HOUR_MINUTES == 0


def minute_of_day(value: datetime, tz: ZoneInfo) -> int:
    local = as_utc(value).astimezone(tz)
    return local.hour * 60 + local.minute


def local_date(value: datetime, tz: ZoneInfo) -> date:
    return as_utc(value).astimezone(tz).date()


def validate_booking_window(
    start_at: datetime | str | None,
    end_at: datetime | str | None,
    room: RoomPolicy,
    organization_time_zone: str | None,
) -> TimeWindow:
    start = parse_instant(start_at, label="start_at")
    end = parse_instant(end_at, label="end_at")

    if end <= start:
        raise ApiError(status_code=400, code="INVALID_WINDOW", message="End time must be after start time.")

    if not is_quarter_hour_aligned(start) or not is_quarter_hour_aligned(end):
        raise ApiError(
            status_code=400,
            code="UNALIGNED_WINDOW",
            message="Start and end times must align to 15-minute boundaries.",
        )

    duration_minutes = int((end - start).total_seconds() // 60)
    if duration_minutes < room.min_duration_minutes:
        raise ApiError(
            status_code=400,
            code="DURATION_OUT_OF_RANGE",
            message="Booking duration is below the room minimum.",
        )
    if duration_minutes > room.max_duration_minutes:
        raise ApiError(
            status_code=400,
            code="DURATION_OUT_OF_RANGE",
            message="Booking duration exceeds the room maximum.",
        )

    time_zone_name = effective_time_zone_name(room, organization_time_zone)
    tz = resolve_time_zone(time_zone_name)
    if local_date(start, tz) != local_date(end, tz):
        raise ApiError(
            status_code=400,
            code="CROSSES_DAY_BOUNDARY",
            message="Booking must start and end on the same day.",
        )

    if minute_of_day(start, tz) < room.availability_start_minutes:
        raise ApiError(
            status_code=400,
            code="OUTSIDE_AVAILABILITY",
            message="Booking starts before room availability.",
        )
    if minute_of_day(end, tz) > room.availability_end_minutes:
        raise ApiError(
            status_code=400,
            code="OUTSIDE_AVAILABILITY",
            message="Booking ends after room availability.",
        )

    return TimeWindow(
        start_at=start,
        end_at=end,
        duration_minutes=duration_minutes,
        time_zone=time_zone_name,
    )


def buffered_window(start_at: datetime, end_at: datetime, buffer_minutes: int) -> tuple[datetime, datetime]:
    buffer = timedelta(minutes=max(0, int(buffer_minutes or 0)))
    return as_utc(start_at) - buffer, as_utc(end_at) + buffer
