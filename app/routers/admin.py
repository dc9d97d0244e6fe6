from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.db import get_db
from app.errors import get_request_id
from app.models import AuditActorType, AuditLog, Tablet
from app.schemas import (
    AuditLogRead,
    RoomCreateRequest,
    RoomDeleteResponse,
    RoomRead,
    RoomUpdateRequest,
    TabletProvisionRequest,
    TabletProvisionResponse,
    TabletRead,
)
from app.security import Principal, client_ip, require_admin, user_agent
from app.services.reservations import get_active_room
from app.services.rooms import create_room, soft_delete_room, update_room
from app.services.tablets import provision_tablet, revoke_tablet

router = APIRouter(tags=["admin"])


def _audit_admin_action(
    db: Session,
    request: Request,
    principal: Principal,
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    details: dict | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(principal.user_id),
        action=action,
        success=True,
        organization_id=principal.organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=client_ip(request),
        user_agent=user_agent(request),
        details=details or {},
        request_id=get_request_id(request),
    )


@router.post("/api/admin/rooms", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
def create_room_endpoint(
    payload: RoomCreateRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> RoomRead:
    room = create_room(db, organization_id=principal.organization_id, **payload.model_dump())
    response = RoomRead.model_validate(room)
    _audit_admin_action(
        db,
        request,
        principal,
        action="ROOM_CREATED",
        entity_type="room",
        entity_id=response.id,
        details={"name": response.name},
    )
    return response


@router.patch("/api/admin/rooms/{room_id}", response_model=RoomRead)
def update_room_endpoint(
    room_id: str,
    payload: RoomUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> RoomRead:
    changes = payload.model_dump(exclude_unset=True)
    room = update_room(db, room_id=room_id, organization_id=principal.organization_id, changes=changes)
    response = RoomRead.model_validate(room)
    _audit_admin_action(
        db,
        request,
        principal,
        action="ROOM_UPDATED",
        entity_type="room",
        entity_id=response.id,
        details={"fields": sorted(changes)},
    )
    return response


@router.delete("/api/admin/rooms/{room_id}", response_model=RoomDeleteResponse)
def delete_room_endpoint(
    room_id: str,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> RoomDeleteResponse:
    room = soft_delete_room(db, room_id=room_id, organization_id=principal.organization_id)
    response = RoomDeleteResponse(room=RoomRead.model_validate(room), deleted_at=room.deleted_at)
    _audit_admin_action(db, request, principal, action="ROOM_DELETED", entity_type="room", entity_id=response.room.id)
    return response


@router.get("/api/admin/tablets", response_model=list[TabletRead])
def list_tablets(
    room_id: str | None = Query(default=None),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[TabletRead]:
    stmt = select(Tablet).where(Tablet.organization_id == principal.organization_id).order_by(Tablet.id.asc())
    if room_id:
        stmt = stmt.where(Tablet.room_id == room_id)
    return [TabletRead.model_validate(item) for item in db.scalars(stmt).all()]


@router.post("/api/admin/tablets", response_model=TabletProvisionResponse, status_code=status.HTTP_201_CREATED)
def provision_tablet_endpoint(
    payload: TabletProvisionRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TabletProvisionResponse:
    room = get_active_room(db, room_id=payload.room_id, organization_id=principal.organization_id)
    provisioned = provision_tablet(db, room=room, name=payload.name)
    response = TabletProvisionResponse(
        tablet_id=provisioned.tablet.id,
        room_id=provisioned.tablet.room_id,
        name=provisioned.tablet.name,
        credential=provisioned.credential,
    )
    _audit_admin_action(
        db,
        request,
        principal,
        action="TABLET_PROVISIONED",
        entity_type="tablet",
        entity_id=str(response.tablet_id),
        details={"room_id": response.room_id},
    )
    return response


@router.post("/api/admin/tablets/{tablet_id}/revoke", response_model=TabletRead)
def revoke_tablet_endpoint(
    tablet_id: int,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TabletRead:
    tablet = revoke_tablet(db, tablet_id=tablet_id, organization_id=principal.organization_id)
    response = TabletRead.model_validate(tablet)
    _audit_admin_action(db, request, principal, action="TABLET_REVOKED", entity_type="tablet", entity_id=str(tablet_id))
    return response


@router.get("/api/admin/audit-logs", response_model=list[AuditLogRead])
def list_audit_logs(
    action: str | None = Query(default=None),
    actor_type: AuditActorType | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    booking_id: int | None = Query(default=None),
    success: bool | None = Query(default=None),
    since: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[AuditLogRead]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.organization_id == principal.organization_id)
        .order_by(AuditLog.id.desc())
        .limit(limit)
    )
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if actor_type is not None:
        stmt = stmt.where(AuditLog.actor_type == actor_type)
    if actor_id:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    if booking_id is not None:
        stmt = stmt.where(AuditLog.booking_id == booking_id)
    if success is not None:
        stmt = stmt.where(AuditLog.success.is_(success))
    if since is not None:
        stmt = stmt.where(AuditLog.ts_utc >= since)
    return [AuditLogRead.model_validate(item) for item in db.scalars(stmt).all()]
