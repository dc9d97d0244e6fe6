from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.errors import ApiError
from app.models import AuditActorType, LoginChallenge, Room, Tablet
from app.services.credentials import SESSION_TOKEN_BYTES, hash_secret, mint_pin, mint_token, verify_secret
from app.services.time_windows import as_utc
from app.settings import get_settings

logger = logging.getLogger("app.tablets")

TABLET_AUTH_ACTION = "TABLET_AUTH"


@dataclass(frozen=True, slots=True)
class TabletSession:
    tablet_id: int
    room_id: str
    session_token: str
    session_expires_at: datetime


@dataclass(frozen=True, slots=True)
class IssuedChallenge:
    challenge_id: int
    pin: str
    qr_token: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class ProvisionedTablet:
    tablet: Tablet
    credential: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _unauthorized(message: str = "Tablet session is invalid or expired.") -> ApiError:
    return ApiError(status_code=401, code="UNAUTHORIZED", message=message)


def resolve_tablet_session(db: Session, token: str | None, *, now_utc: datetime | None = None) -> Tablet:
    raw = (token or "").strip()
    if not raw:
        raise _unauthorized("Missing tablet session token.")

    tablet = db.scalar(
        select(Tablet).where(
            Tablet.session_token_hash == hash_secret(raw),
            Tablet.revoked_at.is_(None),
        )
    )
    if tablet is None or tablet.session_expires_at is None:
        raise _unauthorized()

    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    if as_utc(tablet.session_expires_at) <= now:
        raise _unauthorized()
    return tablet


def authenticate_tablet(
    db: Session,
    *,
    tablet_id: int,
    credential: str,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
    now_utc: datetime | None = None,
) -> TabletSession:
    """Exchange the provisioning credential for a fresh session token."""
    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    tablet = db.get(Tablet, tablet_id)

    failure_reason: str | None = None
    if tablet is None:
        failure_reason = "unknown_tablet"
    elif tablet.revoked_at is not None:
        failure_reason = "revoked"
    elif not verify_secret(credential or "", tablet.credential_hash):
        failure_reason = "invalid_credential"

    if failure_reason is not None:
        log_audit(
            db,
            actor_type=AuditActorType.TABLET,
            actor_id=str(tablet_id),
            action=TABLET_AUTH_ACTION,
            success=False,
            organization_id=tablet.organization_id if tablet is not None else None,
            entity_type="tablet",
            entity_id=str(tablet_id),
            ip=ip,
            user_agent=user_agent,
            details={"reason": failure_reason},
            request_id=request_id,
        )
        raise _unauthorized("Invalid tablet credentials.")

    settings = get_settings()
    session_token = mint_token(SESSION_TOKEN_BYTES)
    expires_at = now + timedelta(days=settings.tablet_session_days)
    tablet.session_token_hash = session_token.digest
    tablet.session_expires_at = expires_at
    tablet.last_seen_at = now
    organization_id = tablet.organization_id
    room_id = tablet.room_id
    db.commit()

    log_audit(
        db,
        actor_type=AuditActorType.TABLET,
        actor_id=str(tablet_id),
        action=TABLET_AUTH_ACTION,
        success=True,
        organization_id=organization_id,
        entity_type="tablet",
        entity_id=str(tablet_id),
        ip=ip,
        user_agent=user_agent,
        details={"room_id": room_id},
        request_id=request_id,
    )
    return TabletSession(
        tablet_id=tablet_id,
        room_id=room_id,
        session_token=session_token.secret,
        session_expires_at=expires_at,
    )


def create_tablet_login_challenge(
    db: Session,
    *,
    tablet: Tablet,
    now_utc: datetime | None = None,
) -> IssuedChallenge:
    now = as_utc(now_utc) if now_utc is not None else _utc_now()
    expires_at = now + timedelta(minutes=get_settings().login_challenge_minutes)
    pin = mint_pin()
    token = mint_token()

    challenge = LoginChallenge(
        organization_id=tablet.organization_id,
        tablet_id=tablet.id,
        pin_hash=pin.digest,
        token_hash=token.digest,
        expires_at=expires_at,
    )
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    return IssuedChallenge(
        challenge_id=challenge.id,
        pin=pin.secret,
        qr_token=token.secret,
        expires_at=expires_at,
    )


def provision_tablet(db: Session, *, room: Room, name: str | None = None) -> ProvisionedTablet:
    credential = mint_token(SESSION_TOKEN_BYTES)
    tablet = Tablet(
        organization_id=room.organization_id,
        room_id=room.id,
        name=(name or "").strip() or None,
        credential_hash=credential.digest,
    )
    db.add(tablet)
    db.commit()
    db.refresh(tablet)
    logger.info("tablet_provisioned", extra={"tablet_id": tablet.id, "room_id": tablet.room_id})
    return ProvisionedTablet(tablet=tablet, credential=credential.secret)


def revoke_tablet(
    db: Session,
    *,
    tablet_id: int,
    organization_id: int,
    now_utc: datetime | None = None,
) -> Tablet:
    tablet = db.scalar(
        select(Tablet).where(
            Tablet.id == tablet_id,
            Tablet.organization_id == organization_id,
        )
    )
    if tablet is None:
        raise ApiError(status_code=404, code="TABLET_NOT_FOUND", message="Tablet not found.")

    if tablet.revoked_at is None:
        tablet.revoked_at = as_utc(now_utc) if now_utc is not None else _utc_now()
    tablet.session_token_hash = None
    tablet.session_expires_at = None
    db.commit()
    db.refresh(tablet)
    logger.info("tablet_revoked", extra={"tablet_id": tablet.id})
    return tablet
