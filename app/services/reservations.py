from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import Booking, BookingCredential, BookingStatus, CredentialType, Room
from app.security import Principal
from app.services.credentials import BookingSecrets, mint_booking_credentials
from app.services.room_locks import RoomLock, get_room_lock
from app.services.time_windows import (
    TimeWindow,
    as_utc,
    buffered_window,
    effective_time_zone_name,
    parse_instant,
    validate_booking_window,
)
from app.services.transactions import run_in_transaction

logger = logging.getLogger("app.reservations")

PIN_MINT_ATTEMPTS = 5
MAX_AVAILABILITY_SPAN = timedelta(days=31)


@dataclass(frozen=True, slots=True)
class ReservationResult:
    booking: Booking
    pin: str
    qr_token: str


@dataclass(frozen=True, slots=True)
class RoomAvailability:
    room: Room
    time_zone: str
    bookings: list[Booking]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_active_room(db: Session, *, room_id: str, organization_id: int) -> Room:
    room = db.scalar(
        select(Room).where(
            Room.id == room_id,
            Room.organization_id == organization_id,
            Room.deleted_at.is_(None),
        )
    )
    if room is None:
        raise ApiError(status_code=404, code="ROOM_NOT_FOUND", message="Room not found.")
    return room


def room_time_zone(room: Room) -> str:
    organization = room.organization
    return effective_time_zone_name(room, organization.time_zone if organization is not None else None)


def find_conflicting_booking(
    db: Session,
    *,
    room_id: str,
    buffered_start: datetime,
    buffered_end: datetime,
) -> int | None:
    return db.scalar(
        select(Booking.id)
        .where(
            Booking.room_id == room_id,
            Booking.status == BookingStatus.ACTIVE,
            Booking.deleted_at.is_(None),
            Booking.start_at < buffered_end,
            Booking.end_at > buffered_start,
        )
        .limit(1)
    )


def _pin_in_use(db: Session, *, room_id: str, digest: str, now_utc: datetime) -> bool:
    existing = db.scalar(
        select(BookingCredential.id)
        .join(Booking, Booking.id == BookingCredential.booking_id)
        .where(
            BookingCredential.type == CredentialType.PIN,
            BookingCredential.token_hash == digest,
            BookingCredential.expires_at > now_utc,
            Booking.room_id == room_id,
            Booking.status == BookingStatus.ACTIVE,
            Booking.deleted_at.is_(None),
        )
        .limit(1)
    )
    return existing is not None


def _mint_room_credentials(db: Session, *, room_id: str, now_utc: datetime) -> BookingSecrets:
    # PIN lookups are scoped by room, so a PIN only has to be unique among the room's live credentials.
    minted = mint_booking_credentials()
    for _ in range(PIN_MINT_ATTEMPTS - 1):
        if not _pin_in_use(db, room_id=room_id, digest=minted.pin.digest, now_utc=now_utc):
            break
        minted = mint_booking_credentials()
    return minted


def reserve_booking(
    db: Session,
    *,
    room: Room,
    window: TimeWindow,
    principal: Principal,
    title: str | None = None,
    recurring_rule_id: int | None = None,
    room_lock: RoomLock | None = None,
    attempts: int | None = None,
) -> ReservationResult:
    room_id = room.id
    organization_id = room.organization_id
    buffered_start, buffered_end = buffered_window(window.start_at, window.end_at, room.buffer_minutes)
    lock = room_lock or get_room_lock(db)

    def _work(session: Session) -> ReservationResult:
        lock.acquire(session, room_id)

        conflict_id = find_conflicting_booking(
            session,
            room_id=room_id,
            buffered_start=buffered_start,
            buffered_end=buffered_end,
        )
        if conflict_id is not None:
            raise ApiError(status_code=409, code="SLOT_UNAVAILABLE", message="Time slot is not available.")

        booking = Booking(
            organization_id=organization_id,
            room_id=room_id,
            created_by_id=principal.user_id,
            title=title,
            start_at=window.start_at,
            end_at=window.end_at,
            status=BookingStatus.ACTIVE,
            recurring_rule_id=recurring_rule_id,
        )
        session.add(booking)
        session.flush()

        minted = _mint_room_credentials(session, room_id=room_id, now_utc=_utc_now())
        pin, qr = minted.pin, minted.qr_token
        session.add_all(
            [
                BookingCredential(
                    booking_id=booking.id,
                    type=CredentialType.PIN,
                    token_hash=pin.digest,
                    expires_at=window.end_at,
                ),
                BookingCredential(
                    booking_id=booking.id,
                    type=CredentialType.QR,
                    token_hash=qr.digest,
                    expires_at=window.end_at,
                ),
            ]
        )
        session.flush()
        return ReservationResult(booking=booking, pin=pin.secret, qr_token=qr.secret)

    result = run_in_transaction(db, _work, attempts=attempts)
    logger.info(
        "booking_reserved",
        extra={
            "booking_id": result.booking.id,
            "room_id": room_id,
            "created_by_id": principal.user_id,
            "recurring_rule_id": recurring_rule_id,
            "start_at": window.start_at.isoformat(),
            "end_at": window.end_at.isoformat(),
        },
    )
    return result


def create_booking(
    db: Session,
    *,
    room_id: str,
    start_at: datetime | str,
    end_at: datetime | str,
    principal: Principal,
    title: str | None = None,
    room_lock: RoomLock | None = None,
) -> ReservationResult:
    room = get_active_room(db, room_id=room_id, organization_id=principal.organization_id)
    window = validate_booking_window(start_at, end_at, room, room.organization.time_zone)
    return reserve_booking(db, room=room, window=window, principal=principal, title=title, room_lock=room_lock)


def get_booking_for_principal(db: Session, *, booking_id: int, principal: Principal) -> Booking:
    booking = db.scalar(
        select(Booking).where(
            Booking.id == booking_id,
            Booking.organization_id == principal.organization_id,
            Booking.deleted_at.is_(None),
        )
    )
    if booking is None:
        raise ApiError(status_code=404, code="BOOKING_NOT_FOUND", message="Booking not found.")
    if not principal.is_admin and booking.created_by_id != principal.user_id:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Only the creator or an admin can cancel.")
    return booking


def cancel_booking(
    db: Session,
    *,
    booking_id: int,
    principal: Principal,
    now_utc: datetime | None = None,
) -> tuple[Booking, bool]:
    """Cancel a booking. Returns the booking and whether this call changed it."""
    booking = get_booking_for_principal(db, booking_id=booking_id, principal=principal)
    if booking.status == BookingStatus.CANCELED:
        return booking, False

    canceled_at = as_utc(now_utc) if now_utc is not None else _utc_now()
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == BookingStatus.ACTIVE)
        .values(
            status=BookingStatus.CANCELED,
            canceled_at=canceled_at,
            canceled_by_id=principal.user_id,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(booking)
    changed = bool(result.rowcount)
    if changed:
        logger.info(
            "booking_canceled",
            extra={"booking_id": booking.id, "canceled_by_id": principal.user_id},
        )
    return booking, changed


def get_room_availability(
    db: Session,
    *,
    room_id: str,
    organization_id: int,
    start_at: datetime | str | None,
    end_at: datetime | str | None,
) -> RoomAvailability:
    room = get_active_room(db, room_id=room_id, organization_id=organization_id)
    start = parse_instant(start_at, label="start_at")
    end = parse_instant(end_at, label="end_at")
    if end <= start:
        raise ApiError(status_code=400, code="INVALID_WINDOW", message="End time must be after start time.")
    if end - start > MAX_AVAILABILITY_SPAN:
        raise ApiError(status_code=400, code="INVALID_WINDOW", message="Availability window is too long.")

    bookings = list(
        db.scalars(
            select(Booking)
            .where(
                Booking.room_id == room.id,
                Booking.status == BookingStatus.ACTIVE,
                Booking.deleted_at.is_(None),
                Booking.start_at < end,
                Booking.end_at > start,
            )
            .order_by(Booking.start_at.asc(), Booking.id.asc())
        ).all()
    )
    return RoomAvailability(room=room, time_zone=room_time_zone(room), bookings=bookings)


def list_user_bookings(
    db: Session,
    *,
    principal: Principal,
    include_canceled: bool = False,
    include_past: bool = False,
    limit: int = 200,
    now_utc: datetime | None = None,
) -> list[Booking]:
    stmt = (
        select(Booking)
        .where(
            Booking.organization_id == principal.organization_id,
            Booking.created_by_id == principal.user_id,
            Booking.deleted_at.is_(None),
        )
        .order_by(Booking.start_at.asc(), Booking.id.asc())
        .limit(limit)
    )
    if not include_canceled:
        stmt = stmt.where(Booking.status == BookingStatus.ACTIVE)
    if not include_past:
        stmt = stmt.where(Booking.end_at > (as_utc(now_utc) if now_utc is not None else _utc_now()))
    return list(db.scalars(stmt).all())
