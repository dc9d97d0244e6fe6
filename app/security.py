from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import ApiError
from app.models import Tablet, User, UserRole
from app.services.tablets import resolve_tablet_session
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

_LOCK = threading.Lock()
_FAILED_ATTEMPTS: dict[str, deque[datetime]] = defaultdict(deque)
_MAX_ATTEMPTS = 10
_ATTEMPT_WINDOW = timedelta(minutes=10)


@dataclass(frozen=True, slots=True)
class Principal:
    user_id: int
    organization_id: int
    role: UserRole
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _cleanup_attempts(key: str, now: datetime) -> None:
    queue = _FAILED_ATTEMPTS[key]
    threshold = now - _ATTEMPT_WINDOW
    while queue and queue[0] < threshold:
        queue.popleft()
    if not queue:
        _FAILED_ATTEMPTS.pop(key, None)


def ensure_login_attempt_allowed(key: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(key, now)
        queue = _FAILED_ATTEMPTS.get(key, deque())
        if len(queue) >= _MAX_ATTEMPTS:
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Too many failed login attempts. Please try again later.",
            )


def register_login_failure(key: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(key, now)
        _FAILED_ATTEMPTS[key].append(now)


def register_login_success(key: str) -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.pop(key, None)


def reset_login_attempts() -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.clear()


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def create_access_token(user: User, *, extra_claims: dict[str, Any] | None = None) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    expires_in = settings.access_token_minutes * 60
    claims: dict[str, Any] = {
        "sub": str(user.id),
        "org": user.organization_id,
        "role": user.role.value,
        "email": user.email,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    if extra_claims:
        claims.update(extra_claims)
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, expires_in, claims


def decode_access_token(token: str) -> Principal:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="UNAUTHORIZED", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="UNAUTHORIZED", message="Token type is invalid.")

    try:
        return Principal(
            user_id=int(payload["sub"]),
            organization_id=int(payload["org"]),
            role=UserRole(payload["role"]),
            email=str(payload.get("email") or ""),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ApiError(status_code=401, code="UNAUTHORIZED", message="Token claims are invalid.") from exc


def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="UNAUTHORIZED", message="Missing bearer token.")

    principal = decode_access_token(credentials.credentials)
    request.state.actor = "user"
    request.state.actor_id = str(principal.user_id)
    return principal


def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return principal


def require_tablet(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Tablet:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="UNAUTHORIZED", message="Missing bearer token.")

    tablet = resolve_tablet_session(db, credentials.credentials)
    request.state.actor = "tablet"
    request.state.actor_id = str(tablet.id)
    return tablet
