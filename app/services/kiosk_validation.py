from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.errors import ApiError
from app.models import AuditActorType, AuditLog, Booking, BookingCredential, BookingStatus, CredentialType, Tablet
from app.services.credentials import hash_secret, normalize_pin
from app.services.time_windows import as_utc
from app.settings import get_settings

logger = logging.getLogger("app.kiosk")

BOOKING_VALIDATED_ACTION = "BOOKING_VALIDATED"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def count_recent_validation_failures(db: Session, *, tablet_id: int, now_utc: datetime) -> int:
    window = timedelta(minutes=get_settings().validation_rate_limit_window_minutes)
    threshold = as_utc(now_utc) - window
    return int(
        db.scalar(
            select(func.count(AuditLog.id)).where(
                AuditLog.action == BOOKING_VALIDATED_ACTION,
                AuditLog.actor_type == AuditActorType.TABLET,
                AuditLog.actor_id == str(tablet_id),
                AuditLog.success.is_(False),
                AuditLog.ts_utc >= threshold,
            )
        )
        or 0
    )


def _find_credential(
    db: Session,
    *,
    credential_type: CredentialType,
    token_hash: str,
    organization_id: int,
    room_id: str,
    now_utc: datetime,
    booking_id: int | None = None,
) -> BookingCredential | None:
    stmt = (
        select(BookingCredential)
        .join(Booking, Booking.id == BookingCredential.booking_id)
        .where(
            BookingCredential.type == credential_type,
            BookingCredential.token_hash == token_hash,
            BookingCredential.expires_at > now_utc,
            Booking.organization_id == organization_id,
            Booking.room_id == room_id,
            Booking.status == BookingStatus.ACTIVE,
            Booking.deleted_at.is_(None),
        )
        .order_by(Booking.start_at.asc())
        .limit(1)
    )
    if booking_id is not None:
        stmt = stmt.where(BookingCredential.booking_id == booking_id)
    return db.scalar(stmt)


def validate_tablet_credential(
    db: Session,
    *,
    tablet: Tablet,
    pin: str | None = None,
    booking_id: int | None = None,
    qr_token: str | None = None,
    now_utc: datetime | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> Booking:
    """
    Check a PIN, or a booking id plus QR token, presented at a room tablet.

    Failures are written to the audit log and the same rows drive the lockout:
    once a tablet has too many recent failures every attempt is refused with
    429 before any credential lookup. Credentials stay usable until they
    expire, so a booking can be opened more than once during its window.
    """
    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    settings = get_settings()
    tablet_id = tablet.id
    organization_id = tablet.organization_id
    room_id = tablet.room_id

    failures = count_recent_validation_failures(db, tablet_id=tablet_id, now_utc=now)
    if failures >= settings.validation_rate_limit_max_failures:
        logger.warning(
            "kiosk_validation_rate_limited",
            extra={"request_id": request_id, "tablet_id": tablet_id, "recent_failures": failures},
        )
        raise ApiError(
            status_code=429,
            code="TOO_MANY_ATTEMPTS",
            message="Too many attempts, try again later.",
        )

    qr_value = (qr_token or "").strip()
    # A supplied PIN is looked up and audited even when blank.
    if pin is not None:
        method = CredentialType.PIN
        credential = _find_credential(
            db,
            credential_type=CredentialType.PIN,
            token_hash=hash_secret(normalize_pin(pin)),
            organization_id=organization_id,
            room_id=room_id,
            now_utc=now,
        )
    elif booking_id is not None and qr_value:
        method = CredentialType.QR
        credential = _find_credential(
            db,
            credential_type=CredentialType.QR,
            token_hash=hash_secret(qr_value),
            organization_id=organization_id,
            room_id=room_id,
            now_utc=now,
            booking_id=booking_id,
        )
    else:
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="Provide a pin or booking_id and qr_token.",
        )

    def _record(success: bool, *, booking_ref: int | None, reason: str | None = None) -> None:
        details: dict[str, str] = {"method": method.value}
        if reason:
            details["reason"] = reason
        log_audit(
            db,
            actor_type=AuditActorType.TABLET,
            actor_id=str(tablet_id),
            action=BOOKING_VALIDATED_ACTION,
            success=success,
            organization_id=organization_id,
            booking_id=booking_ref,
            entity_type="booking",
            entity_id=str(booking_ref) if booking_ref is not None else None,
            ip=ip,
            user_agent=user_agent,
            details=details,
            request_id=request_id,
            ts_utc=now,
        )

    if credential is None:
        _record(False, booking_ref=None, reason="credential_not_found")
        raise ApiError(status_code=404, code="BOOKING_NOT_FOUND", message="Booking not found.")

    booking = credential.booking
    booking_ref = booking.id
    if now < as_utc(booking.start_at) or now > as_utc(booking.end_at):
        _record(False, booking_ref=booking_ref, reason="outside_time_window")
        raise ApiError(status_code=400, code="BOOKING_NOT_VALID_NOW", message="Booking not valid now.")

    credential.last_used_at = now
    tablet.last_seen_at = now
    db.commit()

    _record(True, booking_ref=booking_ref)
    logger.info(
        "kiosk_validation_accepted",
        extra={"request_id": request_id, "tablet_id": tablet_id, "booking_id": booking_ref, "method": method.value},
    )
    return booking
