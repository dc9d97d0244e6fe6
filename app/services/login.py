from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import LoginChallenge, User
from app.security import Principal, create_access_token
from app.services.credentials import hash_secret, mint_pin, mint_token, normalize_pin
from app.services.notifications import send_login_pin_email
from app.services.time_windows import as_utc
from app.settings import get_settings

logger = logging.getLogger("app.login")


@dataclass(frozen=True, slots=True)
class LoginResult:
    access_token: str
    expires_in: int
    user: User


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def _active_user_by_email(db: Session, email: str) -> User | None:
    return db.scalar(select(User).where(User.email == email, User.is_active.is_(True)))


def _consume_challenge(db: Session, challenge: LoginChallenge, now: datetime) -> bool:
    # Conditional update so two concurrent submissions cannot both use one challenge.
    result = db.execute(
        update(LoginChallenge)
        .where(LoginChallenge.id == challenge.id, LoginChallenge.used_at.is_(None))
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)


def request_login_pin(db: Session, *, email: str, now_utc: datetime | None = None) -> datetime:
    normalized = normalize_email(email)
    if not normalized:
        raise ApiError(status_code=400, code="VALIDATION_ERROR", message="Email is required.")

    user = _active_user_by_email(db, normalized)
    if user is None:
        raise ApiError(status_code=403, code="EMAIL_NOT_ALLOWED", message="Email not allowed.")

    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    expires_at = now + timedelta(minutes=get_settings().login_challenge_minutes)
    pin = mint_pin()
    token = mint_token()
    db.add(
        LoginChallenge(
            organization_id=user.organization_id,
            email=normalized,
            pin_hash=pin.digest,
            token_hash=token.digest,
            expires_at=expires_at,
        )
    )
    db.commit()

    send_login_pin_email(to=normalized, pin=pin.secret, expires_at=expires_at)
    return expires_at


def login_with_pin(
    db: Session,
    *,
    email: str,
    pin: str,
    now_utc: datetime | None = None,
) -> LoginResult:
    normalized = normalize_email(email)
    normalized_pin = normalize_pin(pin)
    invalid = ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid email or PIN.")
    if not normalized or not normalized_pin:
        raise invalid

    user = _active_user_by_email(db, normalized)
    if user is None:
        raise invalid

    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    challenge = db.scalar(
        select(LoginChallenge)
        .where(
            LoginChallenge.email == normalized,
            LoginChallenge.organization_id == user.organization_id,
            LoginChallenge.pin_hash == hash_secret(normalized_pin),
            LoginChallenge.used_at.is_(None),
            LoginChallenge.expires_at > now,
        )
        .order_by(LoginChallenge.created_at.desc(), LoginChallenge.id.desc())
        .limit(1)
    )
    if challenge is None or not _consume_challenge(db, challenge, now):
        raise invalid

    db.refresh(user)
    token, expires_in, _claims = create_access_token(user)
    logger.info("user_login_success", extra={"user_id": user.id, "organization_id": user.organization_id})
    return LoginResult(access_token=token, expires_in=expires_in, user=user)


def verify_challenge_for_user(
    db: Session,
    *,
    principal: Principal,
    pin: str | None = None,
    challenge_id: int | None = None,
    token: str | None = None,
    now_utc: datetime | None = None,
) -> datetime:
    """Second-factor check against any open challenge of the caller's organization, tablet ones included."""
    normalized_pin = normalize_pin(pin)
    token_value = (token or "").strip()
    if not normalized_pin and not (challenge_id is not None and token_value):
        raise ApiError(status_code=400, code="VALIDATION_ERROR", message="PIN or challenge token required.")

    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    stmt = select(LoginChallenge).where(
        LoginChallenge.organization_id == principal.organization_id,
        LoginChallenge.used_at.is_(None),
        LoginChallenge.expires_at > now,
    )
    if normalized_pin:
        stmt = stmt.where(LoginChallenge.pin_hash == hash_secret(normalized_pin))
    else:
        stmt = stmt.where(LoginChallenge.id == challenge_id, LoginChallenge.token_hash == hash_secret(token_value))

    challenge = db.scalar(stmt.order_by(LoginChallenge.id.desc()).limit(1))
    if challenge is None or not _consume_challenge(db, challenge, now):
        raise ApiError(status_code=400, code="INVALID_PIN", message="Invalid or expired PIN.")

    logger.info(
        "login_challenge_verified",
        extra={"user_id": principal.user_id, "challenge_id": challenge.id, "tablet_id": challenge.tablet_id},
    )
    return now
