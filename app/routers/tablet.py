from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import ApiError, get_request_id
from app.models import Tablet
from app.schemas import (
    TabletAuthRequest,
    TabletAuthResponse,
    TabletLoginChallengeResponse,
    TabletValidateRequest,
    TabletValidateResponse,
    ValidatedBookingRead,
)
from app.security import (
    client_ip,
    ensure_login_attempt_allowed,
    register_login_failure,
    register_login_success,
    require_tablet,
    user_agent,
)
from app.services.kiosk_validation import validate_tablet_credential
from app.services.tablets import authenticate_tablet, create_tablet_login_challenge

router = APIRouter(tags=["tablet"])


@router.post("/api/tablet/auth", response_model=TabletAuthResponse)
def tablet_auth(
    payload: TabletAuthRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> TabletAuthResponse:
    ip = client_ip(request)
    throttle_key = f"tablet:{ip or 'unknown'}"
    ensure_login_attempt_allowed(throttle_key)
    request.state.actor = "tablet"
    request.state.actor_id = str(payload.tablet_id)

    try:
        session = authenticate_tablet(
            db,
            tablet_id=payload.tablet_id,
            credential=payload.credential,
            ip=ip,
            user_agent=user_agent(request),
            request_id=get_request_id(request),
        )
    except ApiError:
        register_login_failure(throttle_key)
        raise

    register_login_success(throttle_key)
    return TabletAuthResponse(
        tablet_id=session.tablet_id,
        room_id=session.room_id,
        session_token=session.session_token,
        session_expires_at=session.session_expires_at,
    )


@router.post("/api/tablet/login-challenge", response_model=TabletLoginChallengeResponse)
def tablet_login_challenge(
    tablet: Tablet = Depends(require_tablet),
    db: Session = Depends(get_db),
) -> TabletLoginChallengeResponse:
    challenge = create_tablet_login_challenge(db, tablet=tablet)
    return TabletLoginChallengeResponse(
        challenge_id=challenge.challenge_id,
        pin=challenge.pin,
        qr_token=challenge.qr_token,
        expires_at=challenge.expires_at,
    )


@router.post("/api/tablet/validate", response_model=TabletValidateResponse)
def tablet_validate(
    payload: TabletValidateRequest,
    request: Request,
    tablet: Tablet = Depends(require_tablet),
    db: Session = Depends(get_db),
) -> TabletValidateResponse:
    booking = validate_tablet_credential(
        db,
        tablet=tablet,
        pin=payload.pin,
        booking_id=payload.booking_id,
        qr_token=payload.qr_token,
        ip=client_ip(request),
        user_agent=user_agent(request),
        request_id=get_request_id(request),
    )
    request.state.booking_id = booking.id
    return TabletValidateResponse(booking=ValidatedBookingRead.model_validate(booking))
