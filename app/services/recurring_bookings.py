from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import RecurrenceFrequency, RecurringBookingRule
from app.security import Principal
from app.services.notifications import send_booking_created_email
from app.services.recurrence import expand_rule, normalize_frequency
from app.services.reservations import get_active_room, reserve_booking
from app.services.room_locks import RoomLock
from app.services.time_windows import minute_of_day, parse_instant, resolve_time_zone, validate_booking_window
from app.settings import get_settings

logger = logging.getLogger("app.reservations")


@dataclass(frozen=True, slots=True)
class OccurrenceResult:
    start_at: datetime
    end_at: datetime
    booking_id: int | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RecurringBookingOutcome:
    rule: RecurringBookingRule
    results: list[OccurrenceResult]

    @property
    def created(self) -> int:
        return sum(1 for item in self.results if item.booking_id is not None)


def create_recurring_bookings(
    db: Session,
    *,
    room_id: str,
    principal: Principal,
    start_at: datetime | str,
    duration_minutes: int,
    frequency: RecurrenceFrequency | str,
    interval: int = 1,
    days_of_week: Iterable[int] | None = None,
    end_date: date | None = None,
    count: int | None = None,
    title: str | None = None,
    room_lock: RoomLock | None = None,
) -> RecurringBookingOutcome:
    """
    Create a recurring rule and admit each of its occurrences independently.

    The first occurrence is validated before anything is written, so malformed
    input fails the whole request. Afterwards each occurrence runs in its own
    transaction: a conflict or policy failure is recorded in the results and
    the remaining occurrences are still attempted.
    """
    settings = get_settings()
    room = get_active_room(db, room_id=room_id, organization_id=principal.organization_id)
    organization_time_zone = room.organization.time_zone

    first_start = parse_instant(start_at, label="start_at")
    first_window = validate_booking_window(
        first_start,
        first_start + timedelta(minutes=int(duration_minutes)),
        room,
        organization_time_zone,
    )
    tz = resolve_time_zone(first_window.time_zone)
    start_date = first_window.start_at.astimezone(tz).date()
    start_time_minutes = minute_of_day(first_window.start_at, tz)
    weekdays = sorted({int(day) for day in (days_of_week or [])})

    rule = RecurringBookingRule(
        organization_id=room.organization_id,
        room_id=room.id,
        created_by_id=principal.user_id,
        title=title,
        frequency=normalize_frequency(frequency),
        interval=int(interval),
        days_of_week=weekdays,
        start_date=start_date,
        end_date=end_date,
        count=count,
        start_time_minutes=start_time_minutes,
        duration_minutes=int(duration_minutes),
        time_zone=first_window.time_zone,
    )
    occurrences = expand_rule(
        rule,
        default_count=settings.default_recurring_occurrences,
        max_count=settings.max_recurring_occurrences,
    )
    if not occurrences:
        raise ApiError(status_code=400, code="NO_OCCURRENCES", message="No occurrences generated.")

    db.add(rule)
    db.commit()
    db.refresh(rule)
    rule_id = rule.id

    results: list[OccurrenceResult] = []
    for occurrence in occurrences:
        try:
            window = validate_booking_window(occurrence.start_at, occurrence.end_at, room, organization_time_zone)
            reservation = reserve_booking(
                db,
                room=room,
                window=window,
                principal=principal,
                title=title,
                recurring_rule_id=rule_id,
                room_lock=room_lock,
            )
        except ApiError as exc:
            results.append(
                OccurrenceResult(start_at=occurrence.start_at, end_at=occurrence.end_at, error=exc.message)
            )
            continue
        except SQLAlchemyError:
            logger.exception(
                "recurring_occurrence_failed",
                extra={"rule_id": rule_id, "start_at": occurrence.start_at.isoformat()},
            )
            results.append(
                OccurrenceResult(
                    start_at=occurrence.start_at,
                    end_at=occurrence.end_at,
                    error="Failed to create booking.",
                )
            )
            continue

        booking_id = reservation.booking.id
        results.append(OccurrenceResult(start_at=window.start_at, end_at=window.end_at, booking_id=booking_id))
        send_booking_created_email(
            to=principal.email,
            room_name=room.name,
            start_at=window.start_at,
            end_at=window.end_at,
            time_zone=window.time_zone,
            pin=reservation.pin,
            qr_token=reservation.qr_token,
            booking_id=booking_id,
        )

    outcome = RecurringBookingOutcome(rule=rule, results=results)
    logger.info(
        "recurring_bookings_created",
        extra={
            "rule_id": rule_id,
            "room_id": room_id,
            "requested": len(occurrences),
            "created_count": outcome.created,
        },
    )
    return outcome
