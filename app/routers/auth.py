from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.db import get_db
from app.errors import ApiError, get_request_id
from app.models import AuditActorType
from app.schemas import (
    LoginPinRequest,
    LoginPinRequestResponse,
    LoginRequest,
    LoginResponse,
    PinVerifyRequest,
    PinVerifyResponse,
    UserRead,
)
from app.security import (
    Principal,
    client_ip,
    ensure_login_attempt_allowed,
    register_login_failure,
    register_login_success,
    require_user,
    user_agent,
)
from app.services.login import login_with_pin, normalize_email, request_login_pin, verify_challenge_for_user

router = APIRouter(tags=["auth"])


@router.post("/api/auth/request-pin", response_model=LoginPinRequestResponse)
def request_pin(payload: LoginPinRequest, db: Session = Depends(get_db)) -> LoginPinRequestResponse:
    expires_at = request_login_pin(db, email=payload.email)
    return LoginPinRequestResponse(ok=True, expires_at=expires_at)


@router.post("/api/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)) -> LoginResponse:
    email = normalize_email(payload.email)
    ip = client_ip(request)
    throttle_key = f"login:{email}:{ip or 'unknown'}"
    ensure_login_attempt_allowed(throttle_key)

    try:
        result = login_with_pin(db, email=email, pin=payload.pin)
    except ApiError as exc:
        register_login_failure(throttle_key)
        log_audit(
            db,
            actor_type=AuditActorType.USER,
            actor_id=email,
            action="USER_LOGIN",
            success=False,
            entity_type="user",
            ip=ip,
            user_agent=user_agent(request),
            details={"reason": exc.code},
            request_id=get_request_id(request),
        )
        raise

    register_login_success(throttle_key)
    response = LoginResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        user=UserRead.model_validate(result.user),
    )
    request.state.actor = "user"
    request.state.actor_id = str(response.user.id)
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(response.user.id),
        action="USER_LOGIN",
        success=True,
        organization_id=response.user.organization_id,
        entity_type="user",
        entity_id=str(response.user.id),
        ip=ip,
        user_agent=user_agent(request),
        request_id=get_request_id(request),
    )
    return response


@router.post("/api/auth/pin", response_model=PinVerifyResponse)
def verify_pin(
    payload: PinVerifyRequest,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> PinVerifyResponse:
    verified_at = verify_challenge_for_user(
        db,
        principal=principal,
        pin=payload.pin,
        challenge_id=payload.challenge_id,
        token=payload.token,
    )
    return PinVerifyResponse(verified=True, pin_verified_at=verified_at)
