from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import Room
from app.services.time_windows import as_utc, resolve_time_zone

logger = logging.getLogger("app.rooms")

ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 8
ROOM_ID_ATTEMPTS = 5
MINUTES_PER_DAY = 24 * 60

EDITABLE_ROOM_FIELDS = (
    "name",
    "capacity",
    "availability_start_minutes",
    "availability_end_minutes",
    "min_duration_minutes",
    "max_duration_minutes",
    "buffer_minutes",
    "time_zone",
)


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


def _invalid(message: str) -> ApiError:
    return ApiError(status_code=400, code="INVALID_ROOM_SETTINGS", message=message)


def validate_room_settings(values: dict[str, Any]) -> None:
    name = (values.get("name") or "").strip()
    if not name:
        raise _invalid("Room name is required.")

    start = int(values["availability_start_minutes"])
    end = int(values["availability_end_minutes"])
    if not 0 <= start < end <= MINUTES_PER_DAY:
        raise _invalid("Availability must satisfy 0 <= start < end <= 1440.")

    min_duration = int(values["min_duration_minutes"])
    max_duration = int(values["max_duration_minutes"])
    if min_duration < 15 or max_duration < min_duration:
        raise _invalid("Duration bounds must satisfy 15 <= min <= max.")
    if int(values["buffer_minutes"]) < 0:
        raise _invalid("Buffer minutes cannot be negative.")
    capacity = values.get("capacity")
    if capacity is not None and int(capacity) < 1:
        raise _invalid("Capacity must be at least 1.")

    time_zone = values.get("time_zone")
    if time_zone:
        resolve_time_zone(time_zone)


def create_room(
    db: Session,
    *,
    organization_id: int,
    name: str,
    capacity: int = 1,
    availability_start_minutes: int = 480,
    availability_end_minutes: int = 1080,
    min_duration_minutes: int = 15,
    max_duration_minutes: int = 240,
    buffer_minutes: int = 0,
    time_zone: str | None = None,
) -> Room:
    values: dict[str, Any] = {
        "name": (name or "").strip(),
        "capacity": capacity,
        "availability_start_minutes": availability_start_minutes,
        "availability_end_minutes": availability_end_minutes,
        "min_duration_minutes": min_duration_minutes,
        "max_duration_minutes": max_duration_minutes,
        "buffer_minutes": buffer_minutes,
        "time_zone": (time_zone or "").strip() or None,
    }
    validate_room_settings(values)

    for attempt in range(ROOM_ID_ATTEMPTS):
        room = Room(id=generate_room_id(), organization_id=organization_id, **values)
        db.add(room)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("room_id_collision", extra={"attempt": attempt + 1})
            if attempt >= ROOM_ID_ATTEMPTS - 1:
                raise ApiError(
                    status_code=500,
                    code="ROOM_ID_EXHAUSTED",
                    message="Unable to allocate a room id.",
                ) from None
            continue
        db.refresh(room)
        logger.info("room_created", extra={"room_id": room.id, "organization_id": organization_id})
        return room

    raise ApiError(status_code=500, code="ROOM_ID_EXHAUSTED", message="Unable to allocate a room id.")


def _get_room(db: Session, *, room_id: str, organization_id: int, include_deleted: bool = False) -> Room:
    stmt = select(Room).where(Room.id == room_id, Room.organization_id == organization_id)
    if not include_deleted:
        stmt = stmt.where(Room.deleted_at.is_(None))
    room = db.scalar(stmt)
    if room is None:
        raise ApiError(status_code=404, code="ROOM_NOT_FOUND", message="Room not found.")
    return room


def update_room(db: Session, *, room_id: str, organization_id: int, changes: dict[str, Any]) -> Room:
    room = _get_room(db, room_id=room_id, organization_id=organization_id)
    merged = {field: getattr(room, field) for field in EDITABLE_ROOM_FIELDS}
    for field, value in changes.items():
        if field in EDITABLE_ROOM_FIELDS:
            merged[field] = value.strip() if isinstance(value, str) else value
    if merged.get("time_zone") == "":
        merged["time_zone"] = None
    validate_room_settings(merged)

    for field in EDITABLE_ROOM_FIELDS:
        setattr(room, field, merged[field])
    db.commit()
    db.refresh(room)
    return room


def list_rooms(db: Session, *, organization_id: int) -> list[Room]:
    return list(
        db.scalars(
            select(Room)
            .where(Room.organization_id == organization_id, Room.deleted_at.is_(None))
            .order_by(Room.name.asc(), Room.id.asc())
        ).all()
    )


def soft_delete_room(
    db: Session,
    *,
    room_id: str,
    organization_id: int,
    now_utc: datetime | None = None,
) -> Room:
    room = _get_room(db, room_id=room_id, organization_id=organization_id, include_deleted=True)
    if room.deleted_at is None:
        room.deleted_at = as_utc(now_utc) if now_utc is not None else datetime.now(timezone.utc)
        db.commit()
        db.refresh(room)
        logger.info("room_deleted", extra={"room_id": room.id})
    return room
