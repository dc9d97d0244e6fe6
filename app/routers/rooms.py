from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas import AvailabilityBookingRead, RoomAvailabilityResponse, RoomListResponse, RoomRead
from app.security import Principal, require_user
from app.services.reservations import get_room_availability
from app.services.rooms import list_rooms

router = APIRouter(tags=["rooms"])


@router.get("/api/rooms", response_model=RoomListResponse)
def list_rooms_endpoint(
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> RoomListResponse:
    rooms = list_rooms(db, organization_id=principal.organization_id)
    return RoomListResponse(rooms=[RoomRead.model_validate(item) for item in rooms])


@router.get("/api/rooms/{room_id}/availability", response_model=RoomAvailabilityResponse)
def room_availability(
    room_id: str,
    start_at: str | None = Query(default=None),
    end_at: str | None = Query(default=None),
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> RoomAvailabilityResponse:
    availability = get_room_availability(
        db,
        room_id=room_id,
        organization_id=principal.organization_id,
        start_at=start_at,
        end_at=end_at,
    )
    return RoomAvailabilityResponse(
        room=RoomRead.model_validate(availability.room),
        time_zone=availability.time_zone,
        bookings=[AvailabilityBookingRead.model_validate(item) for item in availability.bookings],
    )
