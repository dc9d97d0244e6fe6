from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.db import get_db
from app.errors import get_request_id
from app.models import AuditActorType
from app.schemas import (
    BookingCancelRequest,
    BookingCancelResponse,
    BookingCreateRequest,
    BookingCreateResponse,
    BookingCredentialsRead,
    BookingListResponse,
    BookingRead,
    RecurringBookingRequest,
    RecurringBookingResponse,
    RecurringOccurrenceRead,
)
from app.security import Principal, client_ip, require_user, user_agent
from app.services.notifications import send_booking_canceled_email, send_booking_created_email
from app.services.recurring_bookings import create_recurring_bookings
from app.services.reservations import cancel_booking, create_booking, list_user_bookings, room_time_zone

router = APIRouter(tags=["bookings"])


@router.post("/api/bookings", response_model=BookingCreateResponse, status_code=status.HTTP_201_CREATED)
def create_booking_endpoint(
    payload: BookingCreateRequest,
    request: Request,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> BookingCreateResponse:
    result = create_booking(
        db,
        room_id=payload.room_id,
        start_at=payload.start_at,
        end_at=payload.end_at,
        principal=principal,
        title=payload.title,
    )
    booking = result.booking
    response = BookingCreateResponse(
        booking=BookingRead.model_validate(booking),
        credentials=BookingCredentialsRead(pin=result.pin, qr_token=result.qr_token),
    )
    room = booking.room
    room_name = room.name
    time_zone = room_time_zone(room)
    request.state.booking_id = booking.id

    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(principal.user_id),
        action="BOOKING_CREATED",
        success=True,
        organization_id=principal.organization_id,
        booking_id=response.booking.id,
        entity_type="booking",
        entity_id=str(response.booking.id),
        ip=client_ip(request),
        user_agent=user_agent(request),
        details={"room_id": response.booking.room_id},
        request_id=get_request_id(request),
    )
    send_booking_created_email(
        to=principal.email,
        room_name=room_name,
        start_at=response.booking.start_at,
        end_at=response.booking.end_at,
        time_zone=time_zone,
        pin=result.pin,
        qr_token=result.qr_token,
        booking_id=response.booking.id,
    )
    return response


@router.get("/api/bookings", response_model=BookingListResponse)
def list_bookings(
    include_canceled: bool = Query(default=False),
    include_past: bool = Query(default=False),
    limit: int = Query(default=200, ge=1, le=500),
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> BookingListResponse:
    bookings = list_user_bookings(
        db,
        principal=principal,
        include_canceled=include_canceled,
        include_past=include_past,
        limit=limit,
    )
    return BookingListResponse(bookings=[BookingRead.model_validate(item) for item in bookings])


@router.post("/api/bookings/recurring", response_model=RecurringBookingResponse)
def create_recurring_booking_endpoint(
    payload: RecurringBookingRequest,
    request: Request,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> RecurringBookingResponse:
    outcome = create_recurring_bookings(
        db,
        room_id=payload.room_id,
        principal=principal,
        start_at=payload.start_at,
        duration_minutes=payload.duration_minutes,
        frequency=payload.frequency,
        interval=payload.interval,
        days_of_week=payload.days_of_week,
        end_date=payload.end_date,
        count=payload.count,
        title=payload.title,
    )
    response = RecurringBookingResponse(
        rule_id=outcome.rule.id,
        created=outcome.created,
        results=[
            RecurringOccurrenceRead(
                start_at=item.start_at,
                end_at=item.end_at,
                booking_id=item.booking_id,
                error=item.error,
            )
            for item in outcome.results
        ],
    )
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(principal.user_id),
        action="RECURRING_BOOKINGS_CREATED",
        success=response.created > 0,
        organization_id=principal.organization_id,
        entity_type="recurring_booking_rule",
        entity_id=str(response.rule_id),
        ip=client_ip(request),
        user_agent=user_agent(request),
        details={
            "room_id": payload.room_id,
            "requested": len(response.results),
            "created": response.created,
        },
        request_id=get_request_id(request),
    )
    return response


@router.post("/api/bookings/cancel", response_model=BookingCancelResponse)
def cancel_booking_endpoint(
    payload: BookingCancelRequest,
    request: Request,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> BookingCancelResponse:
    booking, changed = cancel_booking(db, booking_id=payload.booking_id, principal=principal)
    response = BookingCancelResponse(booking=BookingRead.model_validate(booking), already_canceled=not changed)
    request.state.booking_id = booking.id
    if not changed:
        return response

    creator_email = booking.created_by.email if booking.created_by is not None else None
    room = booking.room
    room_name = room.name
    time_zone = room_time_zone(room)
    is_override = principal.is_admin and booking.created_by_id != principal.user_id

    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(principal.user_id),
        action="ADMIN_OVERRIDE" if is_override else "BOOKING_CANCELED",
        success=True,
        organization_id=principal.organization_id,
        booking_id=response.booking.id,
        entity_type="booking",
        entity_id=str(response.booking.id),
        ip=client_ip(request),
        user_agent=user_agent(request),
        details={"operation": "cancel_booking"} if is_override else {},
        request_id=get_request_id(request),
    )
    send_booking_canceled_email(
        to=creator_email,
        room_name=room_name,
        start_at=response.booking.start_at,
        end_at=response.booking.end_at,
        time_zone=time_zone,
        booking_id=response.booking.id,
    )
    return response
